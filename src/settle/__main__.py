"""Allow ``python -m settle``."""

import sys

from settle.cli.main import main

sys.exit(main())
