"""
Entry point for running Paperkeep as a module.

Usage:
    python -m paperkeep [command] [options]
"""

from paperkeep.cli import main

if __name__ == "__main__":
    main()
