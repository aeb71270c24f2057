import re

import pytest

from models.flow_data import FlowGraph
from models.field_mapping_data import FieldMappingData
from services.field_mapper_service import FieldMapperService, field_stem, field_suffix

FIELD_NAME_PATTERN = re.compile(r"^FullName_[A-Z]{7}$")


@pytest.fixture
def mapper(log_util, flow_db):
    return FieldMapperService(log_util=log_util, flow_db=flow_db)


def form_graph():
    return FlowGraph(
        nodes=[
            {"id": "t", "type": "trigger"},
            {
                "id": "form",
                "type": "sendMessage",
                "content": "About you",
                "interactive": {
                    "type": "form",
                    "components": [
                        {"id": "c-name", "label": "Full Name"},
                        {"id": "c-mail", "label": "E-mail address!", "type": "email", "required": True},
                    ]
                }
            },
        ],
        edges=[{"id": "e1", "sourceNodeId": "t", "targetNodeId": "form"}]
    )


def test_field_stem():
    assert field_stem("Full Name") == "FullName"
    assert field_stem("e-mail 2 address") == "EMailAddress"
    assert field_stem("123 !!") == "Field"
    assert field_stem(None) == "Field"


def test_generated_name_shape_and_determinism(mapper):
    first = mapper.generate_field_name("Full Name", "c-name", set())
    second = mapper.generate_field_name("Full Name", "c-name", set())

    assert FIELD_NAME_PATTERN.match(first)
    assert first == second
    assert first.endswith(field_suffix("c-name"))


def test_collisions_are_resolved(mapper):
    used = set()
    first = mapper.generate_field_name("Full Name", "c-name", used)
    second = mapper.generate_field_name("Full Name", "c-name", used)

    assert first != second
    assert FIELD_NAME_PATTERN.match(second)
    assert used == {first, second}


def test_build_field_mappings(mapper):
    mappings = mapper.build_field_mappings("flow-1", 3, form_graph())

    assert [(m.node_id, m.component_id, m.original_label) for m in mappings] == [
        ("form", "c-name", "Full Name"),
        ("form", "c-mail", "E-mail address!"),
    ]
    assert all(m.version == 3 for m in mappings)
    assert re.match(r"^EMailAddress_[A-Z]{7}$", mappings[1].generated_field_name)


@pytest.mark.asyncio
async def test_published_mappings_are_read_back_per_node(mapper, flow_db):
    mappings = await mapper.publish_field_mappings("flow-1", 1, form_graph())

    names = await mapper.get_field_names("flow-1", 1, "form")

    assert names == {m.component_id: m.generated_field_name for m in mappings}
    assert await mapper.get_field_names("flow-1", 2, "form") == {}


def make_mapping(component_id, label, name):
    return FieldMappingData(
        flow_id="f", version=1, node_id="form", component_id=component_id,
        original_label=label, generated_field_name=name
    )


def test_translation_to_labels():
    mappings = [make_mapping("c1", "Full Name", "FullName_ABCDEFG")]

    translation = FieldMapperService.translate_with_mappings(mappings, {"FullName_ABCDEFG": "Ada"})

    assert translation.values == {"Full Name": "Ada"}
    assert not translation.is_unmapped


def test_unmapped_fields_keep_their_value():
    mappings = [make_mapping("c1", "Full Name", "FullName_ABCDEFG")]

    translation = FieldMapperService.translate_with_mappings(
        mappings, {"FullName_ABCDEFG": "Ada", "Mystery_ZZZZZZZ": 7}
    )

    assert translation.values == {"Full Name": "Ada", "Mystery_ZZZZZZZ": "7"}
    assert translation.unmapped == ["Mystery_ZZZZZZZ"]


def test_duplicate_labels_stay_distinct():
    mappings = [
        make_mapping("c1", "Phone", "Phone_AAAAAAA"),
        make_mapping("c2", "Phone", "Phone_BBBBBBB"),
    ]

    translation = FieldMapperService.translate_with_mappings(
        mappings, {"Phone_AAAAAAA": "111", "Phone_BBBBBBB": "222"}
    )

    assert translation.values == {"Phone": "111", "Phone (c2)": "222"}
