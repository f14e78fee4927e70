# connections
#
# Connection compatibility predicate. The editor calls it to reject a drag and the
# normalizer calls it to filter stale edges on load; both go through this function.

from   typing   import Any, List, NamedTuple, Optional, Sequence


from   .blocks  import BlockDefinition, BlockRegistry
from   .schema  import (
	DISPLAY_DATA_INPUT, EXEC_IN_HANDLE, EXEC_OUT_HANDLE,
	BlockCategory, ConnectionVerdict, FlowEdge, OutputField,
)


class ConnectionContext(NamedTuple):
	"""Surrounding graph, used to resolve what a display block re-exports"""
	nodes : Sequence[Any]
	edges : Sequence[FlowEdge]


def _accept() -> ConnectionVerdict:
	return ConnectionVerdict(valid=True)


def _reject(reason: str) -> ConnectionVerdict:
	return ConnectionVerdict(valid=False, reason=reason)


def _find_node(context: Optional[ConnectionContext], node_id: str) -> Any:
	if context is None:
		return None
	for node in context.nodes:
		if node.id == node_id:
			return node
	return None


def _display_producer_id(node: Any, context: Optional[ConnectionContext]) -> Optional[str]:
	source = (node.input_sources or {}).get(DISPLAY_DATA_INPUT)
	if source is not None:
		return source.source_node_id
	if context is None:
		return None
	for edge in context.edges:
		if edge.target == node.id and edge.target_handle == DISPLAY_DATA_INPUT:
			return edge.source
	return None


def source_outputs(
	node     : Any,
	block    : BlockDefinition,
	registry : BlockRegistry,
	context  : Optional[ConnectionContext] = None,
) -> List[OutputField]:
	"""Outputs a node currently exposes; display blocks re-export their data producer's outputs"""
	outputs = block.outputs_for(node.inputs)
	if block.category != BlockCategory.DISPLAY:
		return outputs
	producer_id = _display_producer_id(node, context)
	producer    = _find_node(context, producer_id) if producer_id else None
	if producer is not None and producer.id != node.id:
		resolved = registry.outputs_for(producer.block_type, producer.inputs)
		if resolved:
			return resolved
	return outputs


def resolve_source_output(
	node          : Any,
	block         : BlockDefinition,
	source_handle : Optional[str],
	registry      : BlockRegistry,
	context       : Optional[ConnectionContext] = None,
) -> Optional[OutputField]:
	"""Output a handle refers to; absent, exec or no-longer-declared handles fall back to the first output"""
	outputs = source_outputs(node, block, registry, context)
	if source_handle and source_handle != EXEC_OUT_HANDLE:
		for output in outputs:
			if output.name == source_handle:
				return output
	return outputs[0] if outputs else None


def is_valid_connection(
	source_node   : Any,
	target_node   : Any,
	source_handle : Optional[str],
	target_handle : Optional[str],
	registry      : BlockRegistry,
	context       : Optional[ConnectionContext] = None,
) -> ConnectionVerdict:
	"""
	Decide whether `source_node.source_handle` may feed `target_node.target_handle`.

	Nodes are anything exposing `id`, `block_type`, `inputs` and `input_sources`
	(FlowNode, ConnectedNode). Unknown nodes or blocks are allowed so graphs saved
	before type tags existed keep loading.
	"""
	if source_node is None or target_node is None:
		return _accept()

	source_block = registry.get(source_node.block_type)
	target_block = registry.get(target_node.block_type)
	if source_block is None or target_block is None:
		return _accept()

	if target_handle == EXEC_IN_HANDLE:
		if target_block.is_trigger:
			return _reject("Triggers cannot have incoming connections")
		return _accept()

	if not target_handle:
		return _accept()

	target_input = target_block.get_input(target_handle)
	if target_input is None:
		return _reject(f'Target input "{target_handle}" does not exist on this block')
	if target_input.is_wallet:
		return _reject("Wallet inputs use the connected wallet and cannot receive connections")

	source_output = resolve_source_output(source_node, source_block, source_handle, registry, context)
	if source_output is None or source_output.type is None or not target_input.accepts:
		return _accept()

	if source_output.type not in target_input.accepts:
		accepted = ", ".join(kind.value for kind in target_input.accepts)
		return _reject(f"Type mismatch: {source_output.type.value} cannot connect to input accepting {accepted}")

	return _accept()

