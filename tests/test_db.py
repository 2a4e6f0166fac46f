from __future__ import annotations

import unittest

from sqlalchemy.exc import DBAPIError

from atelier.db import is_missing_table


class _DriverError(Exception):
    def __init__(self, message: str, sqlstate: str | None = None) -> None:
        super().__init__(message)
        self.sqlstate = sqlstate


def _wrap(orig: Exception) -> DBAPIError:
    return DBAPIError('SELECT 1', {}, orig)


class MissingTableTests(unittest.TestCase):
    def test_undefined_table_sqlstate(self) -> None:
        self.assertTrue(is_missing_table(_wrap(_DriverError('relation "price_rules" does not exist', '42P01'))))

    def test_sqlite_message(self) -> None:
        self.assertTrue(is_missing_table(_wrap(_DriverError('no such table: price_rules'))))

    def test_other_schema_errors_are_not_hidden(self) -> None:
        column = _DriverError('column price_rules.priority does not exist', '42703')
        function = _DriverError('function unaccent(text) does not exist', '42883')

        self.assertFalse(is_missing_table(_wrap(column)))
        self.assertFalse(is_missing_table(_wrap(function)))

    def test_non_database_errors(self) -> None:
        self.assertFalse(is_missing_table(ValueError('no such table')))


if __name__ == '__main__':
    unittest.main()
