"""Entry point for ``python -m remaster``."""

from remaster.cli.main import main


if __name__ == "__main__":
    main()
