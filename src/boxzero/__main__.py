"""Entry point for running BoxZero as a module.

Usage:
    python -m boxzero validate-config
    python -m boxzero --help
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before any other imports that need env vars

from boxzero.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
