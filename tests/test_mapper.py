import pytest

from bulkloader.errors import InvalidPathError, MissingIdentityFieldError, UnmappedFieldError
from bulkloader.mapper import (
    BarePath,
    IndexedPath,
    MappingTable,
    NestedPath,
    get_path,
    map_record,
    parse_target_path,
)


def test_parse_target_path_variants() -> None:
    assert parse_target_path("name") == BarePath("name")
    assert parse_target_path("customFields.colorCode") == NestedPath("customFields", "colorCode")
    assert parse_target_path("tags[3]") == IndexedPath("tags", 3)


@pytest.mark.parametrize("expression", ["x.y.z", "tags[", "tags[a]", "[0]", ".name", ""])
def test_parse_target_path_rejects_malformed(expression: str) -> None:
    with pytest.raises(InvalidPathError):
        parse_target_path(expression)


def test_map_record_to_resource() -> None:
    record = {"Name": "object1", "Desc": "the first object", "Date": "230819", "Batch": "batch02"}
    mapping = MappingTable.from_dict(
        {"Name": "name", "Desc": "description", "Date": "customFields.date", "Batch": "tags[0]"}
    )

    resource = map_record(record, mapping)

    assert resource == {
        "name": "object1",
        "description": "the first object",
        "customFields": {"date": "230819"},
        "tags": ["batch02"],
    }


def test_unmapped_key_is_rejected() -> None:
    mapping = MappingTable.from_dict({"A": "name"})

    with pytest.raises(UnmappedFieldError, match="B"):
        map_record({"A": "1", "B": "2"}, mapping)


def test_deep_path_is_rejected_when_table_is_compiled() -> None:
    with pytest.raises(InvalidPathError):
        MappingTable.from_dict({"A": "x.y.z"})


def test_missing_identity_field_is_rejected() -> None:
    mapping = MappingTable.from_dict({"Date": "customFields.date"})

    with pytest.raises(MissingIdentityFieldError):
        map_record({"Date": "230819"}, mapping)


def test_empty_identity_value_is_rejected() -> None:
    mapping = MappingTable.from_dict({"Name": "name"})

    with pytest.raises(MissingIdentityFieldError):
        map_record({"Name": ""}, mapping)


def test_custom_identity_field() -> None:
    mapping = MappingTable.from_dict({"Sku": "sku"})

    assert map_record({"Sku": "123"}, mapping, identity_field="sku") == {"sku": "123"}


def test_indexed_mapping_produces_dense_array() -> None:
    mapping = MappingTable.from_dict({"A": "tags[0]", "B": "tags[1]", "N": "name"})

    resource = map_record({"B": "y", "A": "x", "N": "n"}, mapping)

    assert resource["tags"] == ["x", "y"]


def test_sparse_indexed_mapping_fails_fast() -> None:
    mapping = MappingTable.from_dict({"A": "tags[0]", "B": "tags[2]", "N": "name"})

    with pytest.raises(InvalidPathError, match="sparse"):
        map_record({"A": "x", "B": "y", "N": "n"}, mapping)


def test_conflicting_target_shapes_are_rejected() -> None:
    with pytest.raises(InvalidPathError, match="tags"):
        MappingTable.from_dict({"A": "tags", "B": "tags[0]"})


def test_map_record_does_not_mutate_inputs() -> None:
    record = {"Name": "a", "Colour": "red"}
    raw_mapping = {"Name": "name", "Colour": "customFields.colour"}
    mapping = MappingTable.from_dict(raw_mapping)

    map_record(record, mapping)

    assert record == {"Name": "a", "Colour": "red"}
    assert raw_mapping == {"Name": "name", "Colour": "customFields.colour"}


def test_round_trip_extracts_original_values() -> None:
    record = {"Name": "lamp", "Colour": "teal", "Size": "L", "Tag1": "new", "Tag2": "sale", "Gtin": "0123"}
    mapping = MappingTable.from_dict(
        {
            "Name": "name",
            "Colour": "customFields.colour",
            "Size": "customFields.size",
            "Tag1": "tags[0]",
            "Tag2": "tags[1]",
            "Gtin": "identifiers.gs1:01",
        }
    )

    resource = map_record(record, mapping)

    for source, value in record.items():
        assert get_path(resource, mapping[source]) == value
