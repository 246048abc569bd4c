"""Entry point for running mailcrm as a module.

Usage:
    python -m mailcrm validate-config
    python -m mailcrm --help
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before any other imports that need env vars

from mailcrm.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
