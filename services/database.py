import sqlite3
from flask import current_app
from flask.cli import with_appcontext
import click
import logging


# Configure logging
logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Custom exception raised for database-related errors."""
    pass


class DatabaseManager:
    def __init__(self, connection):
        """
        Initialize the DatabaseManager with a database connection.

        :param connection: A database connection object.
        """
        self.connection = connection

    def close(self):
        """
        Close the database connection.

        :raises DatabaseError: If closing the connection fails.
        """
        if self.connection:
            try:
                self.connection.close()
            except Exception as e:
                raise DatabaseError(f"Failed to close the database connection: {e}")

    def __del__(self):
        """
        Ensure the database connection is closed when the object is deleted.
        """
        try:
            self.close()
        except DatabaseError as e:
            logger.error(f"Warning: {e}")

    def execute_query(self, query, params=None, auto_commit=False):
        """
        Execute a single SQL query with optional parameters.

        :param auto_commit:
        :param query: The SQL query to execute.
        :type query: str
        :param params: A list or tuple of query parameters, defaults to None.
        :type params: list | tuple, optional
        :return: The cursor after executing the query.
        :rtype: sqlite3.Cursor
        :raises DatabaseError: If an error occurs during query execution.
        """
        if params is None:
            params = []
        try:
            cursor = self.connection.cursor()
            cursor.execute(query, params)

            if auto_commit:
                self.commit()

            return cursor
        except Exception as e:
            raise DatabaseError(f"Database query failed: {e}")

    def commit(self):
        """
        Commit the current database transaction.

        :raises DatabaseError: If an error occurs during the commit operation.
        """
        try:
            self.connection.commit()
        except Exception as e:
            raise DatabaseError(f"Commit failed: {e}")

    def rollback(self):
        """
        Rollback the current transaction in case of errors.

        :raises DatabaseError: If the rollback operation fails.
        """
        try:
            self.connection.rollback()
            logger.info("Transaction rolled back successfully.")
        except Exception as e:
            raise DatabaseError(f"Rollback failed: {e}")

    def insert_item(self, table, data):
        """
        Insert a new record into a specified table.

        :param table: The name of the table to insert into.
        :type table: str
        :param data: A dictionary of column-value pairs to insert.
        :type data: dict
        :raises DatabaseError: If the insertion fails.
        """
        query = f"INSERT OR IGNORE INTO {table} ({', '.join(data.keys())}) VALUES ({', '.join(['?'] * len(data))})"
        try:
            self.execute_query(query, tuple(data.values()))
            self.commit()
        except DatabaseError as e:
            raise DatabaseError(f"Insertion failed: {e}")

    def get_item(self, table, criteria):
        """
        Retrieve records from a table based on search criteria.

        :param table: The name of the table to query.
        :type table: str
        :param criteria: A dictionary of column-value pairs for filtering results.
        :type criteria: dict
        :return: A list of matching records.
        :rtype: list
        :raises DatabaseError: If the retrieval fails.
        """
        query = f"SELECT * FROM {table} WHERE " + " AND ".join(f"{k}=?" for k in criteria.keys())
        try:
            cursor = self.execute_query(query, tuple(criteria.values()))
            return cursor.fetchall()
        except DatabaseError as e:
            raise DatabaseError(f"Retrieval failed: {e}")

    def delete_item(self, table, criteria):
        """
        Delete records from a table based on search criteria.

        :param table: The name of the table to delete from.
        :type table: str
        :param criteria: A dictionary of column-value pairs for filtering records to delete.
        :type criteria: dict
        :raises DatabaseError: If the deletion fails.
        """
        query = f"DELETE FROM {table} WHERE " + " AND ".join(f"{k}=?" for k in criteria.keys())
        try:
            self.execute_query(query, tuple(criteria.values()))
            self.commit()
        except DatabaseError as e:
            raise DatabaseError(f"Deletion failed: {e}")

    def upsert_item(self, table, data, conflict_key, commit=True):
        """
        Insert a record, or update it in place when ``conflict_key`` already exists.

        :param table: The name of the table.
        :type table: str
        :param data: A dictionary of column-value pairs; must include ``conflict_key``.
        :type data: dict
        :param conflict_key: Column carrying a UNIQUE constraint.
        :type conflict_key: str
        :param commit: Commit after the statement, defaults to True.
        :raises DatabaseError: If the upsert fails.
        """
        columns = list(data.keys())
        updates = ", ".join(f"{c}=excluded.{c}" for c in columns if c != conflict_key)
        query = (
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join(['?'] * len(columns))}) "
            f"ON CONFLICT({conflict_key}) DO UPDATE SET {updates}"
        )
        try:
            self.execute_query(query, tuple(data.values()))
            if commit:
                self.commit()
        except DatabaseError as e:
            raise DatabaseError(f"Upsert failed: {e}")

    def table_columns(self, table):
        """
        List the column names of a table.

        :param table: The name of the table.
        :type table: str
        :return: Column names in table order.
        :rtype: list[str]
        """
        cursor = self.execute_query(f"PRAGMA table_info({table})")
        return [row[1] for row in cursor.fetchall()]


def create_db_manager(db_file: str):
    """
    Creates a DatabaseManager instance with a static SQLite connection.
    """
    connection = sqlite3.connect(
        db_file,
        timeout=30.0,
        detect_types=sqlite3.PARSE_DECLTYPES,
        check_same_thread=False
    )
    connection.execute("PRAGMA journal_mode=WAL;")
    connection.execute("PRAGMA synchronous=NORMAL;")
    connection.execute("PRAGMA foreign_keys=ON;")
    connection.row_factory = sqlite3.Row
    return DatabaseManager(connection)


@click.command('init-db')
@with_appcontext
def init_db_command():
    """
    Initialize the database using the CLI command.
    """
    db_manager = current_app.extensions['db_manager']
    init_db(db_manager)


def init_db(db_manager: DatabaseManager):
    """
    Create every table the dashboard uses (idempotent).
    """
    try:
        logger.info("Initializing the database...")
        tables = {
            "jobs": '''
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    kind TEXT,            -- e.g. bitrix_deals, bitrix_tasks, bitrix_all
                    status TEXT,          -- 'running', 'completed', 'failed', 'aborted'
                    pct INTEGER,
                    log TEXT,             -- JSON array of log lines
                    error TEXT,
                    result TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );
            ''',
            "deals": '''
                CREATE TABLE IF NOT EXISTS deals (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    bitrix_id TEXT UNIQUE NOT NULL,
                    title TEXT,
                    stage_id TEXT,
                    stage_name TEXT,
                    amount TEXT,
                    currency TEXT,
                    assigned_by_id TEXT,
                    assigned_by_name TEXT,
                    contact_id TEXT,
                    contact_name TEXT,
                    company_id TEXT,
                    company_name TEXT,
                    date_create TEXT,
                    date_modify TEXT,
                    date_begin TEXT,
                    date_close TEXT,
                    department TEXT,
                    probability TEXT,
                    source_id TEXT,
                    type_id TEXT,
                    comments TEXT,
                    raw_data TEXT,       -- full record as JSON
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                );
            ''',

            "tasks": '''
                CREATE TABLE IF NOT EXISTS tasks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    bitrix_id TEXT UNIQUE NOT NULL,
                    title TEXT,
                    status TEXT,
                    status_name TEXT,
                    priority TEXT,
                    priority_name TEXT,
                    created_by TEXT,
                    created_by_name TEXT,
                    responsible_id TEXT,
                    responsible_name TEXT,
                    date_create TEXT,
                    date_close TEXT,
                    description TEXT,
                    raw_data TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                );
            ''',

            "deal_files": '''
                CREATE TABLE IF NOT EXISTS deal_files (
                    id TEXT PRIMARY KEY,
                    file_name TEXT NOT NULL,
                    file_data TEXT NOT NULL,   -- JSON array of deals
                    metadata TEXT,             -- JSON FileMeta
                    uploaded_at TEXT DEFAULT CURRENT_TIMESTAMP
                );
            ''',

            "task_files": '''
                CREATE TABLE IF NOT EXISTS task_files (
                    id TEXT PRIMARY KEY,
                    file_name TEXT NOT NULL,
                    file_data TEXT NOT NULL,
                    uploaded_at TEXT DEFAULT CURRENT_TIMESTAMP
                );
            ''',

            "data_snapshots": '''
                CREATE TABLE IF NOT EXISTS data_snapshots (
                    id TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL,
                    week_start TEXT NOT NULL,
                    week_end TEXT NOT NULL,
                    deals_count INTEGER NOT NULL DEFAULT 0,
                    tasks_count INTEGER NOT NULL DEFAULT 0,
                    deals_data TEXT,
                    tasks_data TEXT,
                    metadata TEXT
                );
            ''',

            "data_snapshots_week_idx": '''
                CREATE INDEX IF NOT EXISTS idx_data_snapshots_week
                    ON data_snapshots (week_start, created_at);
            ''',
        }

        for name, schema in tables.items():
            logger.info(f"Creating table: {name} (if required)")
            db_manager.execute_query(schema)

        db_manager.commit()
        logger.info("Database initialized successfully!")
    except DatabaseError as e:
        logger.error(f"An error occurred: {e}")
