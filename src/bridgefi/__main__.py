# src/bridgefi/__main__.py
"""Module entry point: ``python -m bridgefi``."""
from bridgefi.app import main

main()
