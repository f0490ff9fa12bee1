from sqlalchemy import create_engine, text
from sqlalchemy.orm import scoped_session, sessionmaker, DeclarativeBase


class Base(DeclarativeBase):
    pass


engine = None
db_session = scoped_session(sessionmaker())


def init_db(database_uri: str) -> None:
    global engine
    engine = create_engine(database_uri, echo=False, future=True)
    db_session.configure(bind=engine)

    # Import models to ensure metadata is ready before create_all
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    _upgrade_schema(engine)


def _upgrade_schema(engine) -> None:
    """Apply lightweight schema upgrades for existing SQLite databases."""
    if engine.dialect.name != "sqlite":
        return

    with engine.begin() as connection:
        txn_columns = {
            row["name"]
            for row in connection.execute(text("PRAGMA table_info('tbl_transaction')")).mappings()
        }

        if "trans_ref" not in txn_columns:
            connection.execute(
                text("ALTER TABLE tbl_transaction ADD COLUMN trans_ref VARCHAR(255) NULL")
            )

        if "trans_date" not in txn_columns:
            connection.execute(text("ALTER TABLE tbl_transaction ADD COLUMN trans_date DATE NULL"))

        if "trans_timestamp" not in txn_columns:
            connection.execute(
                text("ALTER TABLE tbl_transaction ADD COLUMN trans_timestamp DATETIME NULL")
            )

        connection.execute(
            text(
                "CREATE UNIQUE INDEX IF NOT EXISTS ux_tbl_transaction_transref_transdate "
                "ON tbl_transaction (trans_ref, trans_date) WHERE trans_ref IS NOT NULL"
            )
        )

        user_columns = {
            row["name"]
            for row in connection.execute(text("PRAGMA table_info('tbl_user')")).mappings()
        }

        if "card" not in user_columns:
            connection.execute(text("ALTER TABLE tbl_user ADD COLUMN card JSON NULL"))

        if "last_login" not in user_columns:
            connection.execute(text("ALTER TABLE tbl_user ADD COLUMN last_login DATETIME NULL"))
