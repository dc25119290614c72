"""
Entry point for running the coordinator as a module.

Usage:
    python -m bridge_coordinator
"""

from bridge_coordinator.cli import main

if __name__ == "__main__":
    main()
