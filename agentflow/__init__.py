# agentflow
#
# Execution core of a visual automation builder: canonical agent graphs, a
# dependency-ordered engine and live trigger subscriptions.

from .schema import (
	EXEC_IN_HANDLE,
	EXEC_OUT_HANDLE,
	BlockCategory,
	ConnectedModel,
	ConnectedNode,
	ConnectionVerdict,
	DeployedAgent,
	Flow,
	FlowEdge,
	FlowNode,
	InputField,
	InputFieldKind,
	InputSource,
	OutputField,
	OutputType,
	OverlapPolicy,
	RetryPolicy,
	SubscriptionOptions,
	TriggerPayload,
)

from .blocks import (
	BlockDefinition,
	BlockRegistry,
	RunContext,
)

from .connections import (
	ConnectionContext,
	is_valid_connection,
)

from .normalizer import (
	build_connected_model,
	normalize,
	normalize_flow,
)

from .variables import (
	parse_variable_ref,
	resolve_variables,
)

from .event_bus import (
	EventBus,
	EventType,
	get_event_bus,
	reset_event_bus,
)

from .engine import (
	AgentEngine,
	CancelToken,
	RunOptions,
	RunResult,
	RunStatus,
	StartNodeError,
	compute_effective_inputs,
)

from .subscriptions import (
	AgentSubscription,
	NodeSubscription,
	SubscriptionManager,
)

from .manager import AgentManager

from .builtins import default_registry

__all__ = [
	# Model
	"EXEC_IN_HANDLE",
	"EXEC_OUT_HANDLE",
	"BlockCategory",
	"ConnectedModel",
	"ConnectedNode",
	"ConnectionVerdict",
	"DeployedAgent",
	"Flow",
	"FlowEdge",
	"FlowNode",
	"InputField",
	"InputFieldKind",
	"InputSource",
	"OutputField",
	"OutputType",
	"OverlapPolicy",
	"RetryPolicy",
	"SubscriptionOptions",
	"TriggerPayload",
	# Blocks
	"BlockDefinition",
	"BlockRegistry",
	"RunContext",
	"default_registry",
	# Graph
	"ConnectionContext",
	"is_valid_connection",
	"build_connected_model",
	"normalize",
	"normalize_flow",
	"parse_variable_ref",
	"resolve_variables",
	# Runtime
	"EventBus",
	"EventType",
	"get_event_bus",
	"reset_event_bus",
	"AgentEngine",
	"CancelToken",
	"RunOptions",
	"RunResult",
	"RunStatus",
	"StartNodeError",
	"compute_effective_inputs",
	"AgentSubscription",
	"NodeSubscription",
	"SubscriptionManager",
	"AgentManager",
]
