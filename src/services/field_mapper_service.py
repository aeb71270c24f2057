import hashlib
import re
from typing import Optional, List, Dict, Any, Set

# Utils
from utils.log_utils import LogUtil

# Database
from database.flow_db import FlowDB

# Models
from models.flow_data import FlowGraph, NodeType
from models.field_mapping_data import FieldMappingData, FormTranslation

SUFFIX_LENGTH = 7
DEFAULT_FIELD_STEM = "Field"


def field_stem(label: Optional[str]) -> str:
    """
    CamelCase of the alphabetic words of a label ("Full Name" -> "FullName").
    Digits and punctuation are dropped so the result stays provider-safe.
    """
    words = re.findall(r"[A-Za-z]+", label or "")
    if not words:
        return DEFAULT_FIELD_STEM
    return "".join(word[0].upper() + word[1:] for word in words)


def field_suffix(component_id: str, salt: int = 0) -> str:
    seed = component_id if salt == 0 else f"{component_id}:{salt}"
    digest = hashlib.sha256(seed.encode("utf-8")).digest()
    return "".join(chr(ord("A") + byte % 26) for byte in digest[:SUFFIX_LENGTH])


class FieldMapperService:
    """
    Generates provider-safe field names for form components at publish time and
    translates form replies back to operator labels.
    """

    def __init__(self, log_util: LogUtil, flow_db: FlowDB):
        self.log_util = log_util
        self.flow_db = flow_db

    def generate_field_name(self, label: Optional[str], component_id: str, used_names: Set[str]) -> str:
        """
        Generate a field name unique within used_names and add it to the set.
        """
        stem = field_stem(label)
        salt = 0
        name = f"{stem}_{field_suffix(component_id, salt)}"
        while name in used_names:
            salt += 1
            name = f"{stem}_{field_suffix(component_id, salt)}"
        used_names.add(name)
        return name

    def build_field_mappings(self, flow_id: str, version: int, graph: FlowGraph) -> List[FieldMappingData]:
        used_names: Set[str] = set()
        mappings: List[FieldMappingData] = []
        for node in graph.nodes:
            if node.type != NodeType.SEND_MESSAGE.value or not node.is_form:
                continue
            for component in node.interactive.components:
                mappings.append(FieldMappingData(
                    flow_id=flow_id,
                    version=version,
                    node_id=node.id,
                    component_id=component.id,
                    original_label=component.label,
                    generated_field_name=self.generate_field_name(component.label, component.id, used_names)
                ))
        return mappings

    async def publish_field_mappings(self, flow_id: str, version: int, graph: FlowGraph) -> List[FieldMappingData]:
        mappings = self.build_field_mappings(flow_id, version, graph)
        await self.flow_db.save_field_mappings(mappings)
        self.log_util.info(
            service_name="FieldMapperService",
            message=f"Persisted {len(mappings)} field mapping(s) for flow {flow_id} version {version}"
        )
        return mappings

    async def get_field_names(self, flow_id: str, version: int, node_id: str) -> Dict[str, str]:
        """
        component id -> generated field name for one form node
        """
        mappings = await self.flow_db.get_field_mappings(flow_id, version)
        return {
            mapping.component_id: mapping.generated_field_name
            for mapping in mappings
            if mapping.node_id == node_id
        }

    @staticmethod
    def translate_with_mappings(mappings: List[FieldMappingData], fields: Dict[str, Any]) -> FormTranslation:
        """
        Translate generated names back to labels. Unknown names keep their
        generated name and are listed in `unmapped`; no value is ever dropped.
        """
        by_name = {mapping.generated_field_name: mapping for mapping in mappings}
        translation = FormTranslation()
        for generated_name, value in fields.items():
            mapping = by_name.get(generated_name)
            if mapping is None:
                key = generated_name
                translation.unmapped.append(generated_name)
            else:
                key = mapping.original_label
                if key in translation.values:
                    # Two components share a label
                    key = f"{mapping.original_label} ({mapping.component_id})"
            translation.values[key] = value if isinstance(value, str) else str(value)
        return translation

    async def translate_form_reply(self, flow_id: str, version: int, fields: Dict[str, Any]) -> FormTranslation:
        mappings = await self.flow_db.get_field_mappings(flow_id, version)
        translation = self.translate_with_mappings(mappings, fields)
        if translation.is_unmapped:
            self.log_util.warning(
                service_name="FieldMapperService",
                message=f"Form reply for flow {flow_id} version {version} has unmapped fields: {translation.unmapped}"
            )
        return translation
