"""Create the first admin account on a fresh database.

    python seed_db.py "Admin Name" admin@example.com [password]
"""
import logging
import sys
from getpass import getpass

from pymongo.database import Database

from config import Settings
from database import connect, ensure_indexes, create_document
from main import hash_password
from schemas import User

logger = logging.getLogger(__name__)


def seed_admin(db: Database, name: str, email: str, password: str) -> str:
    if db['user'].find_one({"email": email}):
        raise ValueError(f"A user with email {email} already exists")
    admin = User(name=name, email=email, password=hash_password(password), role='admin')
    return create_document(db, 'user', admin)


def run_seed(argv):
    if len(argv) < 2:
        print(__doc__)
        return 2
    name, email = argv[0], argv[1]
    password = argv[2] if len(argv) > 2 else getpass("Admin password: ")
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level)
    db = connect(settings)
    ensure_indexes(db)
    try:
        user_id = seed_admin(db, name, email, password)
    except ValueError as e:
        logger.error("%s", e)
        return 1
    logger.info("Created admin %s (%s)", email, user_id)
    return 0


if __name__ == "__main__":
    sys.exit(run_seed(sys.argv[1:]))
