import argparse
import os
import sys

# Add the project root to the Python path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, project_root)

from shardflip.config import settings
from shardflip.core.security import issue_token


def main():
    """Print a bearer token for a wallet address, signed with the configured secret."""
    parser = argparse.ArgumentParser(description="Issue a ShardFlip bearer token")
    parser.add_argument("address", nargs="?", default=settings.ledger.owner)
    args = parser.parse_args()

    token = issue_token(settings.security.secret_key, args.address)
    print(f"Address: {args.address.lower()}")
    print(f"Authorization: Bearer {token}")


if __name__ == "__main__":
    main()
