import os

from dotenv import load_dotenv

from qqbridge.cli.commands import app

# Load .env file from ~/.qqbridge/ if it exists
# Precedence: existing env vars > .env file (override=False)
load_dotenv(os.path.expanduser("~/.qqbridge/.env"), override=False)

if __name__ == "__main__":
    app()
