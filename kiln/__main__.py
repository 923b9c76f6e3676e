"""Run the kiln CLI with ``python -m kiln``."""

from .cli import main

if __name__ == "__main__":  # pragma: no cover
    main()
