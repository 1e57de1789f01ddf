"""Entry point for `python -m codegraph` and `codegraph` console script."""

import sys

from .cli.commands import run_cli


def main():
    sys.exit(run_cli())


if __name__ == "__main__":
    main()
