"""Allow ``python -m infraworker``."""

from .cli import app

if __name__ == "__main__":
    app()
