"""Settle command line interface."""
