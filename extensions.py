from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event

db = SQLAlchemy()


def enable_sqlite_savepoints(engine) -> None:
    """Let pysqlite honour SAVEPOINT and enforce foreign keys.

    The stdlib driver opens transactions lazily and ignores SAVEPOINT unless
    SQLAlchemy emits BEGIN itself, so we take transaction control away from it.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")
