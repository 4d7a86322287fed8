"""
Create the single admin account from the command line.

    python setup_admin.py --username lidija --email lidija@saukstas-meiles.lt

The setup key and password are prompted for and never echoed.
"""
import argparse
import logging
import sys
from getpass import getpass

from config import get_config
from database import init_db
from errors import ApiError
from security import AuthGate, LoginGuard

logger = logging.getLogger(__name__)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Create the admin account")
    parser.add_argument("--username", required=True)
    parser.add_argument("--email", required=True)
    parser.add_argument("--env", default=None, help="Configuration name (development, testing, production)")
    args = parser.parse_args(argv)

    app_config = get_config(args.env)
    db = init_db(name=app_config.DATABASE_NAME, url=app_config.DATABASE_URL)
    gate = AuthGate(app_config, LoginGuard(), db)

    setup_key = getpass("Setup key: ")
    password = getpass("Password: ")
    if password != getpass("Repeat password: "):
        print("Passwords do not match.", file=sys.stderr)
        return 1

    try:
        user = gate.setup_admin(setup_key, args.username, args.email, password)
    except ApiError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        errors = getattr(e, "errors", [])
        if len(errors) > 1:
            for message in errors:
                print(f"  {message}", file=sys.stderr)
        return 1

    print(f"Admin '{user['username']}' <{user['email']}> created.")
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="[%(asctime)s] %(levelname)s in %(module)s: %(message)s")
    sys.exit(main())
