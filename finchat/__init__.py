from finchat.db import Database

__version__ = "0.3.0"


def init_db(database: Database) -> None:
    """Create tables (simple dev mode; production schemas are migrated)."""
    database.create_all()
