"""Entry point for running inboxzero as a module.

Usage:
    python -m inboxzero validate-config
    python -m inboxzero --help
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before any other imports that need env vars

from inboxzero.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
