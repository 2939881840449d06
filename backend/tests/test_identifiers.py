import pytest

from viewsync.exceptions import IdentifierError
from viewsync.services.identifiers import (
    MAX_IDENTIFIER_LENGTH,
    generate_table_name,
    quote,
    quote_mssql,
    sanitize,
)


@pytest.mark.parametrize("name", ["order_lines_2024", "Cantidad", "A", "x" * MAX_IDENTIFIER_LENGTH])
def test_sanitize_returns_safe_names_unchanged(name):
    assert sanitize(name) == name


@pytest.mark.parametrize(
    "name",
    [
        "orders; DROP TABLE x",
        "",
        "a" * 1000,
        'col"name',
        "name with space",
        "precio-unitario",
        "año",
        "pg_catalog",
        "_etl_id",
        "_ETL_SYNCED_AT",
        None,
    ],
)
def test_sanitize_rejects_unsafe_names(name):
    with pytest.raises(IdentifierError):
        sanitize(name)


def test_quote_styles():
    assert quote("Cantidad") == '"Cantidad"'
    assert quote_mssql("Cantidad") == "[Cantidad]"
    with pytest.raises(IdentifierError):
        quote_mssql("x]; DROP TABLE y; --")


def test_generate_table_name_is_deterministic_and_lowercase():
    first = generate_table_name("Inventario", "dbo", "VW_Stock")
    assert first == "inventario__dbo__vw_stock"
    assert generate_table_name("Inventario", "dbo", "VW_Stock") == first


def test_generate_table_name_validates_each_part():
    with pytest.raises(IdentifierError):
        generate_table_name("inventario", "dbo", "vw stock")


def test_generate_table_name_rejects_overlong_result():
    with pytest.raises(IdentifierError):
        generate_table_name("d" * 30, "dbo", "v" * 30)
