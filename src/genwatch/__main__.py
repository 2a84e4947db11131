"""Allow ``python -m genwatch``."""

from genwatch.cli import app

if __name__ == "__main__":
    app()
