# test_database.py

import unittest
from unittest.mock import MagicMock

from services.database import DatabaseError, DatabaseManager, create_db_manager, init_db


class TestDatabaseManager(unittest.TestCase):
    def setUp(self):
        # Mock the database connection
        self.mock_db = MagicMock()
        self.db_manager = DatabaseManager(self.mock_db)
        self.cursor = self.mock_db.cursor.return_value

    def test_insert_item(self):
        self.db_manager.insert_item('deal_files', {'id': 'a1', 'file_name': 'deals.csv'})

        query = "INSERT OR IGNORE INTO deal_files (id, file_name) VALUES (?, ?)"
        self.cursor.execute.assert_called_once_with(query, ('a1', 'deals.csv'))
        self.mock_db.commit.assert_called_once()

    def test_get_item(self):
        self.cursor.fetchall.return_value = [{'id': 'a1'}]

        result = self.db_manager.get_item('deal_files', {'id': 'a1'})

        self.cursor.execute.assert_called_once_with("SELECT * FROM deal_files WHERE id=?", ('a1',))
        self.assertEqual(result, [{'id': 'a1'}])

    def test_delete_item(self):
        self.db_manager.delete_item('task_files', {'id': 'b2'})

        self.cursor.execute.assert_called_once_with("DELETE FROM task_files WHERE id=?", ('b2',))
        self.mock_db.commit.assert_called_once()

    def test_upsert_item_without_commit(self):
        self.db_manager.upsert_item('deals', {'bitrix_id': '7', 'title': 'A'}, 'bitrix_id', commit=False)

        query = (
            "INSERT INTO deals (bitrix_id, title) VALUES (?, ?) "
            "ON CONFLICT(bitrix_id) DO UPDATE SET title=excluded.title"
        )
        self.cursor.execute.assert_called_once_with(query, ('7', 'A'))
        self.mock_db.commit.assert_not_called()

    def test_query_failure_is_wrapped(self):
        self.cursor.execute.side_effect = RuntimeError("disk I/O error")

        with self.assertRaises(DatabaseError):
            self.db_manager.execute_query("SELECT 1")


class TestInitDb(unittest.TestCase):
    def setUp(self):
        self.db_manager = create_db_manager(":memory:")
        init_db(self.db_manager)

    def tearDown(self):
        self.db_manager.close()

    def test_tables_created(self):
        cursor = self.db_manager.execute_query("SELECT name FROM sqlite_master WHERE type='table';")
        tables = {row['name'] for row in cursor.fetchall()}

        expected_tables = {'jobs', 'deals', 'tasks', 'deal_files', 'task_files', 'data_snapshots'}
        self.assertTrue(expected_tables.issubset(tables))

    def test_init_is_idempotent(self):
        init_db(self.db_manager)
        self.assertIn('kind', self.db_manager.table_columns('jobs'))

    def test_upsert_updates_existing_row(self):
        self.db_manager.upsert_item('deals', {'bitrix_id': '7', 'title': 'A'}, 'bitrix_id')
        self.db_manager.upsert_item('deals', {'bitrix_id': '7', 'title': 'B'}, 'bitrix_id')

        rows = self.db_manager.get_item('deals', {'bitrix_id': '7'})
        self.assertEqual([r['title'] for r in rows], ['B'])


if __name__ == '__main__':
    unittest.main()
