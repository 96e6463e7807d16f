"""CLI entry point for blumpo.cli module.

Enables execution via: python -m blumpo.cli
"""

from blumpo.cli.recover_jobs import main

if __name__ == "__main__":
    raise SystemExit(main())
