# schema

from __future__ import annotations


from   datetime import datetime
from   enum     import Enum
from   pydantic import BaseModel, ConfigDict, Field, PrivateAttr
from   pydantic.alias_generators import to_camel
from   typing   import Any, Dict, List, Optional, Set
from   uuid     import uuid4


EXEC_IN_HANDLE               : str   = "exec-in"
EXEC_OUT_HANDLE              : str   = "exec-out"
MODEL_VERSION                : str   = "1.0.0"
DISPLAY_DATA_INPUT           : str   = "data"

DEFAULT_MAX_QUEUED           : int   = 16
DEFAULT_RETRY_MAX_ATTEMPTS   : int   = 5
DEFAULT_RETRY_BASE_DELAY     : float = 1.0
DEFAULT_RETRY_FACTOR         : float = 2.0
DEFAULT_RETRY_MAX_DELAY      : float = 60.0
DEFAULT_MAX_RUN_HISTORY      : int   = 100


def generate_id():
	return str(uuid4())


class WireModel(BaseModel):
	"""Base for everything that crosses the editor boundary (camelCase on the wire)"""
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# BLOCK FIELDS
# =============================================================================

class BlockCategory(str, Enum):
	TRIGGER = "trigger"
	ACTION  = "action"
	FILTER  = "filter"
	DISPLAY = "display"


class InputFieldKind(str, Enum):
	TEXT           = "text"
	NUMBER         = "number"
	SELECT         = "select"
	TOGGLE         = "toggle"
	TEXTAREA       = "textarea"
	ADDRESS        = "address"
	WALLET_ADDRESS = "walletAddress"
	SLIDER         = "slider"
	TOKEN_SELECT   = "tokenSelect"
	VARIABLE       = "variable"
	KEY_VALUE      = "keyValue"


class OutputType(str, Enum):
	STRING  = "string"
	NUMBER  = "number"
	ADDRESS = "address"
	JSON    = "json"
	BOOLEAN = "boolean"


class InputField(WireModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

	name           : str
	label          : str                        = ""
	kind           : InputFieldKind             = Field(default=InputFieldKind.TEXT, alias="type")
	default_value  : Optional[str]              = None
	accepts        : Optional[List[OutputType]] = None   # Output types this input can be wired from
	allow_variable : bool                       = False
	options        : Optional[List[str]]        = None

	@property
	def is_wallet(self) -> bool:
		return self.kind == InputFieldKind.WALLET_ADDRESS


class OutputField(WireModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

	name  : str
	label : str                  = ""
	type  : Optional[OutputType] = None   # Only used for connection compatibility


# =============================================================================
# GRAPH
# =============================================================================

class InputSource(WireModel):
	"""Explicit binding of an input field to an upstream node output"""
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

	source_node_id : str
	output_name    : str


class NodePosition(WireModel):
	x : float = 0.0
	y : float = 0.0


class FlowNode(WireModel):
	id            : str
	block_type    : str                    = "unknown"
	inputs        : Dict[str, str]         = Field(default_factory=dict)
	input_sources : Dict[str, InputSource] = Field(default_factory=dict)
	position      : NodePosition           = Field(default_factory=NodePosition)
	extra         : Dict[str, Any]         = Field(default_factory=dict)   # UI-only data (label, flags)

	def to_persisted(self) -> Dict[str, Any]:
		"""Persisted editor shape: input literals and bindings live in `data`"""
		data = dict(self.extra)
		data.update(self.inputs)
		if self.input_sources:
			data["inputSources"] = {
				name: source.model_dump(by_alias=True)
				for name, source in self.input_sources.items()
			}
		return {
			"id"        : self.id,
			"blockType" : self.block_type,
			"position"  : self.position.model_dump(),
			"data"      : data,
		}


class FlowEdge(WireModel):
	id            : str
	source        : str
	target        : str
	source_handle : Optional[str] = None
	target_handle : Optional[str] = None

	@property
	def is_execution(self) -> bool:
		return self.source_handle == EXEC_OUT_HANDLE and self.target_handle == EXEC_IN_HANDLE


class Flow(WireModel):
	"""Raw editor / persisted state, possibly malformed; the normalizer coerces it"""
	nodes : List[Dict[str, Any]] = Field(default_factory=list)
	edges : List[Dict[str, Any]] = Field(default_factory=list)

	@classmethod
	def from_graph(cls, nodes: List[FlowNode], edges: List[FlowEdge]) -> Flow:
		return cls(
			nodes = [node.to_persisted() for node in nodes],
			edges = [edge.model_dump(by_alias=True, exclude_none=True) for edge in edges],
		)


class InputConnection(WireModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

	source_node_id : str
	source_handle  : Optional[str] = None
	edge_id        : str


class OutputConnection(WireModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

	target_node_id : str
	target_handle  : Optional[str] = None
	edge_id        : str


class ConnectedNode(WireModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

	id            : str
	block_type    : str
	inputs        : Dict[str, str]          = Field(default_factory=dict)
	input_sources : Dict[str, InputSource]  = Field(default_factory=dict)
	incoming      : List[InputConnection]   = Field(default_factory=list)
	outgoing      : List[OutputConnection]  = Field(default_factory=list)

	@property
	def predecessors(self) -> List[str]:
		return [conn.source_node_id for conn in self.incoming]

	@property
	def successors(self) -> List[str]:
		return [conn.target_node_id for conn in self.outgoing]


class ConnectedModel(WireModel):
	"""Canonical, execution-only model of an agent; rebuilt on every edit, never mutated"""
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

	version     : str                 = MODEL_VERSION
	exported_at : str                 = Field(default_factory=lambda: datetime.now().isoformat())
	nodes       : List[ConnectedNode] = Field(default_factory=list)
	edges       : List[FlowEdge]      = Field(default_factory=list)

	_index : Dict[str, ConnectedNode] = PrivateAttr(default_factory=dict)

	def model_post_init(self, __context: Any):
		self._index = {node.id: node for node in self.nodes}

	def get_node(self, node_id: str) -> Optional[ConnectedNode]:
		return self._index.get(node_id)

	def reachable_from(self, node_id: str) -> Set[str]:
		"""Node ids reachable over execution edges, start node excluded"""
		seen  : Set[str]  = set()
		stack : List[str] = [node_id]
		while stack:
			current = self._index.get(stack.pop())
			if current is None:
				continue
			for target in current.successors:
				if target not in seen and target != node_id:
					seen.add(target)
					stack.append(target)
		return seen

	def to_flow(self) -> Flow:
		nodes = [
			FlowNode(id=n.id, block_type=n.block_type, inputs=n.inputs, input_sources=n.input_sources)
			for n in self.nodes
		]
		return Flow.from_graph(nodes, self.edges)


class ConnectionVerdict(WireModel):
	valid  : bool
	reason : Optional[str] = None


# =============================================================================
# SUBSCRIPTION OPTIONS
# =============================================================================

class OverlapPolicy(str, Enum):
	"""What to do when a trigger fires while its previous run is still in flight"""
	SKIP  = "skip"
	QUEUE = "queue"


class RetryPolicy(WireModel):
	max_attempts : int   = DEFAULT_RETRY_MAX_ATTEMPTS
	base_delay   : float = DEFAULT_RETRY_BASE_DELAY
	factor       : float = DEFAULT_RETRY_FACTOR
	max_delay    : float = DEFAULT_RETRY_MAX_DELAY

	def delay_for(self, attempt: int) -> float:
		"""Backoff before retry number `attempt` (1-based)"""
		exponent = max(0, attempt - 1)
		return min(self.max_delay, self.base_delay * (self.factor ** exponent))


class SubscriptionOptions(WireModel):
	overlap    : OverlapPolicy = OverlapPolicy.QUEUE
	max_queued : int           = DEFAULT_MAX_QUEUED
	retry      : RetryPolicy   = Field(default_factory=RetryPolicy)


class TriggerPayload(WireModel):
	agent_id : str
	node_id  : str
	outputs  : Dict[str, str] = Field(default_factory=dict)


# =============================================================================
# DEPLOYED AGENTS
# =============================================================================

class DeployedAgent(WireModel):
	id             : str                 = Field(default_factory=generate_id)
	name           : str
	description    : Optional[str]       = None
	flow           : Flow                = Field(default_factory=Flow)
	model          : ConnectedModel      = Field(default_factory=ConnectedModel)
	wallet_address : Optional[str]       = None
	is_active      : bool                = False
	deployed_at    : str                 = Field(default_factory=lambda: datetime.now().isoformat())
	created_at     : str                 = Field(default_factory=lambda: datetime.now().isoformat())
