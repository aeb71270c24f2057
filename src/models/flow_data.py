from pydantic import BaseModel, Field, Discriminator, ConfigDict, field_validator, model_validator
from typing import Optional, List, Dict, Any, Union, Literal, Annotated
from datetime import datetime
from enum import Enum
import re


class NodeType(str, Enum):
    TRIGGER = "trigger"
    SEND_MESSAGE = "sendMessage"
    WAIT_FOR_REPLY = "waitForReply"
    CONDITION = "condition"
    DELAY = "delay"


class FlowStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    DEPRECATED = "deprecated"


class ReplyType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    EMAIL = "email"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    STARTS_WITH = "startsWith"
    REGEX = "regex"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"


class ConditionSubject(str, Enum):
    LAST_REPLY = "last_reply"
    FORM_FIELD = "form_field"
    VARIABLE = "variable"


class DelayUnit(str, Enum):
    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"


# Edge discriminators with engine meaning
TRUE_BRANCH = "true"
FALSE_BRANCH = "false"
TIMEOUT_BRANCH = "timeout"
RESERVED_DISCRIMINATORS = (TRUE_BRANCH, FALSE_BRANCH, TIMEOUT_BRANCH)

UNARY_OPERATORS = (ConditionOperator.IS_EMPTY, ConditionOperator.IS_NOT_EMPTY)


class NodePosition(BaseModel):
    posX: float = 0
    posY: float = 0

class MediaReference(BaseModel):
    type: Literal["image", "video", "audio", "document"]
    url: str
    caption: Optional[str] = None

class InteractiveButton(BaseModel):
    id: str
    title: str

class ListRow(BaseModel):
    id: str
    title: str
    description: Optional[str] = None

class ListSection(BaseModel):
    title: Optional[str] = None
    rows: List[ListRow]

class FormComponent(BaseModel):
    id: str
    label: str
    type: str = "text_input"
    required: bool = False

class InteractiveContent(BaseModel):
    type: Literal["buttons", "list", "form"]
    header: Optional[str] = None
    footer: Optional[str] = None
    buttons: List[InteractiveButton] = []
    buttonLabel: Optional[str] = None
    sections: List[ListSection] = []
    formTitle: Optional[str] = None
    components: List[FormComponent] = []

    @model_validator(mode="after")
    def check_controls(self):
        if self.type == "buttons" and not self.buttons:
            raise ValueError("buttons message needs at least one button")
        if self.type == "list" and not any(section.rows for section in self.sections):
            raise ValueError("list message needs at least one row")
        if self.type == "form" and not self.components:
            raise ValueError("form message needs at least one component")
        return self


# Base FlowNode with common fields
class BaseFlowNode(BaseModel):
    model_config = ConfigDict(extra='ignore')  # editor-only fields are dropped on publish

    id: str
    type: str
    content: Optional[str] = None
    position: Optional[NodePosition] = None

class TriggerNode(BaseFlowNode):
    type: Literal["trigger"]
    keywords: List[str] = []

class SendMessageNode(BaseFlowNode):
    type: Literal["sendMessage"]
    media: Optional[MediaReference] = None
    interactive: Optional[InteractiveContent] = None

    @model_validator(mode="after")
    def check_body(self):
        if not (self.content or self.media or self.interactive):
            raise ValueError("sendMessage needs content, media or interactive controls")
        return self

    @property
    def is_form(self) -> bool:
        return self.interactive is not None and self.interactive.type == "form"

class WaitForReplyNode(BaseFlowNode):
    type: Literal["waitForReply"]
    replyType: Optional[ReplyType] = None
    timeout: Optional[int] = Field(default=None, ge=0, description="Seconds until the wait expires")
    variableName: Optional[str] = None
    invalidReplyLimit: Optional[int] = Field(default=None, ge=1)

class ConditionNode(BaseFlowNode):
    type: Literal["condition"]
    operator: ConditionOperator
    compareValue: Optional[str] = None
    subject: ConditionSubject = ConditionSubject.LAST_REPLY
    subjectKey: Optional[str] = None

    @model_validator(mode="after")
    def check_operands(self):
        if self.operator not in UNARY_OPERATORS and self.compareValue is None:
            raise ValueError(f"operator {self.operator.value} needs a compareValue")
        if self.operator == ConditionOperator.REGEX:
            try:
                re.compile(self.compareValue)
            except re.error as e:
                raise ValueError(f"invalid regex '{self.compareValue}': {e}")
        if self.subject != ConditionSubject.LAST_REPLY and not self.subjectKey:
            raise ValueError(f"subject {self.subject.value} needs a subjectKey")
        return self

class DelayNode(BaseFlowNode):
    type: Literal["delay"]
    duration: int = Field(..., ge=0)
    unit: DelayUnit = DelayUnit.SECONDS

    @property
    def duration_seconds(self) -> int:
        multiplier = {
            DelayUnit.SECONDS: 1,
            DelayUnit.MINUTES: 60,
            DelayUnit.HOURS: 3600,
            DelayUnit.DAYS: 86400,
        }[self.unit]
        return self.duration * multiplier

# Union of all node types with discriminator
FlowNode = Annotated[
    Union[
        TriggerNode,
        SendMessageNode,
        WaitForReplyNode,
        ConditionNode,
        DelayNode
    ],
    Discriminator("type")
]

class FlowEdge(BaseModel):
    id: str
    sourceNodeId: str
    targetNodeId: str
    discriminator: Optional[str] = None
    sequence: int = 0

    @field_validator("discriminator")
    @classmethod
    def blank_discriminator_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value


class DraftGraph(BaseModel):
    """
    Editable graph. Nodes stay as raw dicts until publish, where they are parsed
    into the typed union.
    """
    nodes: List[Dict[str, Any]] = []
    edges: List[FlowEdge] = []


class FlowGraph(BaseModel):
    """
    Frozen, typed graph of one published version.
    """
    nodes: List[FlowNode] = []
    edges: List[FlowEdge] = []

    def get_node(self, node_id: Optional[str]):
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing_edges(self, node_id: str) -> List[FlowEdge]:
        return sorted(
            (edge for edge in self.edges if edge.sourceNodeId == node_id),
            key=lambda edge: edge.sequence
        )

    def incoming_edges(self, node_id: str) -> List[FlowEdge]:
        return [edge for edge in self.edges if edge.targetNodeId == node_id]

    def trigger_node(self) -> Optional[TriggerNode]:
        for node in self.nodes:
            if node.type == NodeType.TRIGGER.value:
                return node
        return None


class FlowData(BaseModel):
    """
    Flow header plus the editable draft. Published snapshots live in FlowVersionData.
    """
    id: Optional[str] = None  # MongoDB _id
    flow_id: str
    account_id: str
    name: str
    status: FlowStatus = Field(default=FlowStatus.DRAFT, description="draft until the first publish")
    draft: DraftGraph = Field(default_factory=DraftGraph)
    current_version: Optional[int] = None
    is_active: bool = True
    next_sequence: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class FlowVersionData(BaseModel):
    id: Optional[str] = None  # MongoDB _id
    flow_id: str
    account_id: str
    name: str
    version: int
    status: FlowStatus = FlowStatus.PUBLISHED
    graph: FlowGraph
    published_at: datetime = Field(default_factory=datetime.utcnow)
    created_at: datetime = Field(default_factory=datetime.utcnow)
