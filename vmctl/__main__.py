"""Module entrypoint for ``python -m vmctl``."""

from vmctl.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
