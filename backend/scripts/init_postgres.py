"""
Check the PostgreSQL database for the token authority.
Run once before `alembic upgrade head`: python scripts/init_postgres.py

Requires: PostgreSQL installed and running. Create user and database:

  sudo -u postgres psql
  CREATE USER authority WITH PASSWORD 'authority';
  CREATE DATABASE token_authority OWNER authority;
  GRANT ALL PRIVILEGES ON DATABASE token_authority TO authority;
  \q
"""

import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from app.config import settings
from app.core.database import build_engine_options


def main():
    url = settings.get_database_url()
    if not url.startswith("postgresql"):
        print("Database URL is not PostgreSQL. Skipping.")
        return
    try:
        engine = create_engine(url, **build_engine_options(url))
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            timeout = conn.execute(text("SHOW statement_timeout")).scalar()
        print(f"PostgreSQL connection OK (statement_timeout={timeout}).")
    except SQLAlchemyError as e:
        print(f"Cannot connect to PostgreSQL: {e}")
        print("\nCreate database first:")
        print("  psql -U postgres -c \"CREATE USER authority WITH PASSWORD 'authority';\"")
        print("  psql -U postgres -c \"CREATE DATABASE token_authority OWNER authority;\"")
        print("  psql -U postgres -c \"GRANT ALL PRIVILEGES ON DATABASE token_authority TO authority;\"")
        sys.exit(1)


if __name__ == "__main__":
    main()
