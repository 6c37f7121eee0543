import os
import tempfile
import unittest

# Keep the import-time init_db() in main away from the real app.db.
os.environ.setdefault("BILL_DB_PATH", os.path.join(tempfile.gettempdir(), "billsplit-tests.db"))

import store  # noqa: E402


class TempDatabaseTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self._saved_db_path = store.DB_PATH
        store.DB_PATH = os.path.join(self._tmpdir.name, "bills.db")
        store.init_db()

    def tearDown(self) -> None:
        store.DB_PATH = self._saved_db_path
        self._tmpdir.cleanup()
