"""
Entry point for running kintone_backup as a module.

Usage:
    python -m kintone_backup --help
    python -m kintone_backup backup 42 --full
    python -m kintone_backup --scheduled
"""

from kintone_backup.cli import cli

if __name__ == "__main__":
    cli()
