"""Module entrypoint: ``python -m vmhost``."""

from vmhost.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
