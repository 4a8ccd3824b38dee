"""
Tests for Value Sanitization Module

These tests validate that source values are coerced into values PostgreSQL
accepts, that NOT NULL columns get safe defaults, and that sanitization is
idempotent.
"""

import pytest
from collections import OrderedDict
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from unittest.mock import Mock

from mysql_pg_replication.models import ColumnDef
from mysql_pg_replication.value_sanitizer import (
    TaggedValue,
    ValueKind,
    column_kind,
    get_safe_default,
    plain_values,
    sanitize_row,
    sanitize_value,
    to_hex,
)


def make_column(source_type, raw_type=None, **kwargs):
    return ColumnDef(
        name=kwargs.pop('name', 'col'),
        source_type=source_type,
        raw_type=raw_type or source_type,
        **kwargs
    )


def strict(source_type, raw_type=None, **kwargs):
    """NOT NULL column as enforced by the target."""
    return make_column(source_type, raw_type, nullable=False, strict_nullability=True, **kwargs)


class TestSafeDefaults:
    """NULL or invalid values in enforced NOT NULL columns get a type default."""

    @pytest.mark.parametrize("column,expected", [
        (strict('int', 'int(11)'), 0),
        (strict('bigint'), 0),
        (strict('double'), 0.0),
        (strict('decimal', 'decimal(10,2)'), Decimal('0.0')),
        (strict('varchar', 'varchar(20)', max_length=20), ''),
        (strict('text'), ''),
        (strict('date'), '1970-01-01'),
        (strict('datetime'), '1970-01-01 00:00:00'),
        (strict('timestamp'), '1970-01-01 00:00:00'),
        (strict('time'), '00:00:00'),
        (strict('json'), '{}'),
        (strict('tinyint', 'tinyint(1)'), False),
        (strict('enum', "enum('draft','published')"), 'draft'),
        (strict('blob'), b''),
    ])
    def test_null_gets_type_default(self, column, expected):
        result = sanitize_value(None, column)
        assert result is not None
        assert result == expected

    def test_declared_default_wins(self):
        column = make_column('int', 'int(11)', nullable=False, default_expr='5')
        assert sanitize_value(None, column) == 5

    def test_quoted_declared_default(self):
        column = strict('varchar', 'varchar(10)', max_length=10, default_expr="'active'")
        assert get_safe_default(column) == 'active'

    def test_expression_default_ignored(self):
        column = strict('datetime', default_expr='CURRENT_TIMESTAMP')
        assert get_safe_default(column) == '1970-01-01 00:00:00'

    def test_invalid_declared_default_ignored(self):
        column = strict('date', default_expr='0000-00-00')
        assert get_safe_default(column) == '1970-01-01'

    def test_relaxed_source_column_allows_null(self):
        """Source NOT NULL columns without a default are created nullable in the target."""
        column = make_column('int', 'int(11)', nullable=False)
        assert sanitize_value(None, column) is None


class TestCoercion:
    """Test per-type value coercion."""

    def test_nullable_null_passes(self):
        assert sanitize_value(None, make_column('int')) is None

    def test_integer_text(self):
        assert sanitize_value('42', make_column('int')) == 42

    def test_non_integer_text(self):
        assert sanitize_value('abc', make_column('int')) is None
        assert sanitize_value('abc', strict('int')) == 0

    def test_smallint_range(self):
        assert sanitize_value(32767, make_column('smallint')) == 32767
        assert sanitize_value(40000, make_column('tinyint', 'tinyint(4)')) is None

    def test_int_range(self):
        assert sanitize_value(2 ** 31, make_column('int')) is None
        assert sanitize_value(2 ** 31, make_column('bigint')) == 2 ** 31

    def test_fractional_value_in_integer_column(self):
        assert sanitize_value(1.5, make_column('int')) is None
        assert sanitize_value(2.0, make_column('int')) == 2

    def test_non_finite_float(self):
        assert sanitize_value(float('nan'), make_column('double')) is None
        assert sanitize_value(float('inf'), strict('float')) == 0.0

    def test_decimal_from_float(self):
        assert sanitize_value(1.25, make_column('decimal')) == Decimal('1.25')

    def test_boolean(self):
        column = make_column('tinyint', 'tinyint(1)')
        assert sanitize_value(1, column) is True
        assert sanitize_value('0', column) is False
        assert sanitize_value('yes', column) is True

    def test_zero_dates(self):
        assert sanitize_value('0000-00-00', make_column('date')) is None
        assert sanitize_value('0000-00-00 00:00:00', make_column('datetime')) is None
        assert sanitize_value('', make_column('datetime')) is None

    def test_valid_dates_kept(self):
        assert sanitize_value('2024-03-01', make_column('date')) == '2024-03-01'
        assert sanitize_value(date(1955, 11, 5), make_column('date')) == date(1955, 11, 5)
        moment = datetime(2024, 3, 1, 12, 30)
        assert sanitize_value(moment, make_column('datetime')) == moment

    def test_impossible_date(self):
        assert sanitize_value('2024-02-30', make_column('date')) is None

    def test_time_from_timedelta(self):
        assert sanitize_value(timedelta(hours=1, minutes=2), make_column('time')) == time(1, 2)

    def test_time_outside_one_day(self):
        assert sanitize_value(timedelta(hours=30), make_column('time')) is None
        assert sanitize_value(timedelta(hours=-1), make_column('time')) is None

    def test_varchar_truncated(self):
        column = make_column('varchar', 'varchar(5)', max_length=5)
        assert sanitize_value('abcdefgh', column) == 'abcde'

    def test_null_bytes_removed(self):
        assert sanitize_value('a\x00b', make_column('text')) == 'ab'

    def test_invalid_utf8_bytes_replaced(self):
        assert sanitize_value(b'ok\xff', make_column('text')) == 'ok\ufffd'

    def test_enum_legal_value(self):
        column = make_column('enum', "enum('draft','published')")
        assert sanitize_value('published', column) == 'published'

    def test_enum_illegal_value(self):
        assert sanitize_value('archived', make_column('enum', "enum('draft','published')")) is None
        assert sanitize_value('archived', strict('enum', "enum('draft','published')")) == 'draft'

    def test_set_joined_in_definition_order(self):
        column = make_column('set', "set('a','b','c')")
        assert sanitize_value({'c', 'a'}, column) == 'a,c'

    def test_json_serialized(self):
        assert sanitize_value({'a': 1}, make_column('json')) == '{"a": 1}'

    def test_invalid_json_text(self):
        assert sanitize_value('{not json', make_column('json')) is None

    def test_binary_untouched(self):
        assert sanitize_value(b'\x00\x01', make_column('blob')) == b'\x00\x01'

    def test_json_embedded_binary_decoded(self):
        assert sanitize_value('base64:type15:aGVsbG8=', make_column('varbinary')) == b'hello'


class TestIdempotence:
    """sanitize(sanitize(v)) == sanitize(v)."""

    @pytest.mark.parametrize("value,column", [
        ('42', make_column('int')),
        (40000, make_column('tinyint', 'tinyint(4)')),
        ('yes', make_column('tinyint', 'tinyint(1)')),
        (1.25, make_column('decimal')),
        ('0000-00-00', strict('date')),
        ('2024-02-30', make_column('date')),
        (timedelta(hours=1, minutes=2), make_column('time')),
        ('abcdefgh', make_column('varchar', 'varchar(5)', max_length=5)),
        ('a\x00b', make_column('text')),
        ('archived', strict('enum', "enum('draft','published')")),
        ({'c', 'a'}, make_column('set', "set('a','b','c')")),
        ({'a': [1, 2]}, make_column('json')),
        ('base64:type15:aGVsbG8=', make_column('blob')),
        (None, strict('datetime')),
    ])
    def test_idempotent(self, value, column):
        once = sanitize_value(value, column)
        assert sanitize_value(once, column) == once


class TestEvents:
    """Changed values are reported to the event sink."""

    def test_changed_value_reported(self):
        events = Mock()
        column = make_column('varchar', 'varchar(5)', name='code', max_length=5)

        sanitize_value('abcdefgh', column, 'users', events)

        events.value_sanitized.assert_called_once_with(
            'users', 'code', 'varchar', 'abcdefgh', 'abcde'
        )

    def test_unchanged_value_not_reported(self):
        events = Mock()
        sanitize_value(7, make_column('int'), 'users', events)
        events.value_sanitized.assert_not_called()

    def test_representation_change_not_reported(self):
        events = Mock()
        sanitize_value(timedelta(minutes=5), make_column('time'), 'users', events)
        events.value_sanitized.assert_not_called()


class TestSanitizeRow:
    """Test row-level tagging."""

    def test_tags_and_order(self):
        columns = {
            'id': make_column('int', name='id'),
            'avatar': make_column('blob', name='avatar'),
            'deleted_at': make_column('datetime', name='deleted_at'),
        }
        row = OrderedDict([('id', '3'), ('avatar', b'\x89PNG'), ('deleted_at', None), ('extra', 'x')])

        tagged = sanitize_row(row, columns, 'users')

        assert list(tagged) == ['id', 'avatar', 'deleted_at', 'extra']
        assert tagged['id'] == TaggedValue(ValueKind.INTEGER, 3)
        assert tagged['avatar'] == TaggedValue(ValueKind.BINARY, b'\x89PNG')
        assert tagged['deleted_at'] == TaggedValue(ValueKind.NULL, None)
        assert tagged['extra'] == TaggedValue(ValueKind.TEXT, 'x')
        assert plain_values(tagged) == OrderedDict(
            [('id', 3), ('avatar', b'\x89PNG'), ('deleted_at', None), ('extra', 'x')]
        )

    def test_column_kind(self):
        assert column_kind(make_column('tinyint', 'tinyint(1)')) is ValueKind.BOOLEAN
        assert column_kind(make_column('year')) is ValueKind.INTEGER
        assert column_kind(make_column('enum', "enum('a')")) is ValueKind.TEXT

    def test_to_hex(self):
        assert to_hex(b'\x01\xff') == '01ff'
        assert to_hex('A') == '41'
