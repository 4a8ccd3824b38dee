"""
Tests for Source Schema Discovery Module

These tests validate table filtering, catalog parsing, the dependency
ordering of tables and the per-run schema cache.
"""

import pytest
from unittest.mock import Mock, patch

from mysql_pg_replication.config import ReplicationConfig
from mysql_pg_replication.exceptions import DependencyCycleError
from mysql_pg_replication.models import ForeignKeyRef
from mysql_pg_replication.schema_discovery import (
    SchemaCache,
    SchemaDiscovery,
    order_by_dependencies,
)


def assert_parents_first(order, graph):
    for table, referenced in graph.items():
        for parent in referenced:
            if parent != table:
                assert order.index(parent) < order.index(table), f"{parent} must precede {table}"


class TestOrderByDependencies:
    """Test the topological ordering of tables."""

    def test_parents_before_children(self):
        graph = {
            'order_items': ['orders', 'products'],
            'orders': ['customers'],
            'products': ['categories'],
            'customers': [],
            'categories': [],
        }
        tables = ['order_items', 'orders', 'products', 'customers', 'categories']

        order = order_by_dependencies(tables, graph)

        assert sorted(order) == sorted(tables)
        assert_parents_first(order, graph)

    def test_deterministic(self):
        graph = {'b': ['a'], 'c': ['a'], 'a': []}
        assert order_by_dependencies(['c', 'b', 'a'], graph) == ['a', 'c', 'b']
        assert order_by_dependencies(['c', 'b', 'a'], graph) == ['a', 'c', 'b']

    def test_independent_tables_keep_input_order(self):
        graph = {'x': [], 'y': [], 'z': []}
        assert order_by_dependencies(['y', 'x', 'z'], graph) == ['y', 'x', 'z']

    def test_self_reference_ignored(self):
        graph = {'employees': ['employees', 'departments'], 'departments': []}
        assert order_by_dependencies(['employees', 'departments'], graph) == ['departments', 'employees']

    def test_cycle_detected(self):
        graph = {'a': ['b'], 'b': ['c'], 'c': ['a']}

        with pytest.raises(DependencyCycleError) as exc_info:
            order_by_dependencies(['a', 'b', 'c'], graph)

        assert exc_info.value.cycle == ['a', 'b', 'c', 'a']
        assert 'a -> b -> c -> a' in str(exc_info.value)

    def test_cycle_error_is_value_error(self):
        with pytest.raises(ValueError):
            order_by_dependencies(['a', 'b'], {'a': ['b'], 'b': ['a']})

    def test_deep_chain_does_not_recurse(self):
        """A long FK chain is ordered without hitting the recursion limit."""
        tables = [f"t{i}" for i in range(5000)]
        graph = {f"t{i}": [f"t{i + 1}"] for i in range(4999)}
        graph['t4999'] = []

        order = order_by_dependencies(tables, graph)

        assert order[0] == 't4999'
        assert order[-1] == 't0'


class TestSchemaDiscovery:
    """Test catalog queries against a mocked source."""

    @pytest.fixture
    def source(self):
        source = Mock()
        source.database = 'shop'
        return source

    @pytest.fixture
    def discovery(self, source):
        config = ReplicationConfig(source_database='shop', exclude_tables=('migrations',))
        return SchemaDiscovery(config, source=source)

    def test_list_tables_applies_excludes(self, discovery, source):
        source.get_records.return_value = [
            ('customers',), ('migrations',), ('orders',), ('sync_audit_log',), ('sync_progress',),
        ]

        assert discovery.list_tables() == ['customers', 'orders']

    def test_include_pattern(self, source):
        config = ReplicationConfig(source_database='shop', include_tables='^order')
        discovery = SchemaDiscovery(config, source=source)

        assert discovery.should_include('orders') is True
        assert discovery.should_include('order_items') is True
        assert discovery.should_include('customers') is False

    def test_get_columns(self, discovery, source):
        source.get_dicts.return_value = [
            {
                'column_name': 'id', 'data_type': 'int', 'column_type': 'int(10) unsigned',
                'is_nullable': 'NO', 'column_default': None, 'extra': 'auto_increment',
                'character_maximum_length': None, 'numeric_precision': 10, 'numeric_scale': 0,
            },
            {
                'column_name': 'email', 'data_type': 'varchar', 'column_type': 'varchar(191)',
                'is_nullable': 'YES', 'column_default': None, 'extra': '',
                'character_maximum_length': 191, 'numeric_precision': None, 'numeric_scale': None,
            },
        ]

        columns = discovery.get_columns('customers')

        assert [c.name for c in columns] == ['id', 'email']
        assert columns[0].is_auto_increment is True
        assert columns[0].nullable is False
        assert columns[1].max_length == 191
        assert columns[1].raw_type == 'varchar(191)'
        assert source.get_dicts.call_args[0][1] == ['shop', 'customers']

    def test_get_foreign_keys(self, discovery, source):
        source.get_records.return_value = [('fk_orders_customer', 'customer_id', 'customers', 'id')]

        assert discovery.get_foreign_keys('orders') == [
            ForeignKeyRef('customer_id', 'customers', 'id', 'fk_orders_customer')
        ]

    def test_dependency_graph_restricted_to_known_tables(self, discovery):
        fks = {
            'orders': [
                ForeignKeyRef('customer_id', 'customers', 'id'),
                ForeignKeyRef('warehouse_id', 'warehouses', 'id'),
            ],
            'customers': [],
        }
        with patch.object(discovery, 'get_foreign_keys', side_effect=lambda t: fks[t]):
            graph = discovery.build_dependency_graph(['orders', 'customers'])

        assert graph == {'orders': ['customers'], 'customers': []}

    def test_topological_order(self, discovery):
        fks = {
            'orders': [ForeignKeyRef('customer_id', 'customers', 'id')],
            'customers': [],
        }
        with patch.object(discovery, 'get_foreign_keys', side_effect=lambda t: fks[t]):
            assert discovery.topological_order(['orders', 'customers']) == ['customers', 'orders']


class TestSchemaCache:
    """Test the run-scoped catalog memo."""

    def test_table_schema_cached(self):
        discovery = Mock()
        cache = SchemaCache(discovery)

        cache.table_schema('orders')
        cache.table_schema('orders')

        discovery.get_table_schema.assert_called_once_with('orders')

    def test_invalidate(self):
        discovery = Mock()
        cache = SchemaCache(discovery)

        cache.table_schema('orders')
        cache.invalidate()
        cache.table_schema('orders')

        assert discovery.get_table_schema.call_count == 2

    def test_target_columns(self):
        discovery = Mock()
        discovery.config = ReplicationConfig(target_schema='public')
        hook = Mock()
        hook.get_records.return_value = [
            ('id', 'integer', 'int4', 'NO', "nextval('orders_id_seq'::regclass)", None, 32, 0),
            ('status', 'character varying', 'varchar', 'NO', "'new'::character varying", 20, None, None),
            ('paid', 'boolean', 'bool', 'NO', 'false', None, None, None),
        ]
        cache = SchemaCache(discovery, target_hook=hook)

        columns = cache.target_columns('orders')
        cache.target_columns('orders')

        hook.get_records.assert_called_once()
        assert hook.get_records.call_args[1]['parameters'] == ('public', 'orders')
        assert columns['id'].source_type == 'int'
        assert columns['id'].is_auto_increment is True
        assert columns['id'].default_expr is None
        assert columns['status'].raw_type == 'varchar(20)'
        assert columns['status'].default_expr == "'new'"
        assert columns['paid'].raw_type == 'tinyint(1)'
        assert columns['paid'].default_expr == '0'
        assert all(c.strict_nullability for c in columns.values())

    def test_target_columns_requires_hook(self):
        cache = SchemaCache(Mock())
        with pytest.raises(ValueError):
            cache.target_columns('orders')
