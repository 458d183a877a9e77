"""CLI entry point for genpool.cli module.

Enables execution via: python -m genpool.cli
"""

from genpool.cli.reconcile import main

if __name__ == "__main__":
    main()
