# normalizer
#
# Editor state -> canonical model. Pure and idempotent: malformed input is dropped
# or coerced to defaults, never raised, so a partially corrupt graph still loads.

import math


from   collections import defaultdict
from   pydantic    import ValidationError
from   typing      import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple


from   .blocks      import BlockRegistry
from   .connections import ConnectionContext, is_valid_connection, resolve_source_output
from   .schema      import (
	EXEC_IN_HANDLE, EXEC_OUT_HANDLE,
	ConnectedModel, ConnectedNode, Flow, FlowEdge, FlowNode,
	InputConnection, InputSource, NodePosition, OutputConnection,
)


# Keys of a node's `data` that never hold input literals
_RESERVED_DATA_KEYS : Set[str] = {"blockType", "block_type", "inputSources", "input_sources"}
_UI_DATA_KEYS       : Set[str] = {"label", "description", "color", "icon", "collapsed", "selected", "dragging"}


# =============================================================================
# COERCION
# =============================================================================

def _coerce_id(value: Any) -> Optional[str]:
	if isinstance(value, bool) or value is None:
		return None
	if isinstance(value, (int, float)):
		value = str(value)
	if isinstance(value, str) and value.strip():
		return value
	return None


def _coerce_handle(value: Any) -> Optional[str]:
	if isinstance(value, str) and value:
		return value
	return None


def _coerce_scalar(value: Any) -> Optional[str]:
	"""Stringify a literal the way the editor would display it; non-scalars give None"""
	if isinstance(value, str):
		return value
	if isinstance(value, bool):
		return "true" if value else "false"
	if isinstance(value, int):
		return str(value)
	if isinstance(value, float):
		if not math.isfinite(value):
			return None
		return str(int(value)) if value.is_integer() else str(value)
	return None


def _coerce_position(value: Any) -> NodePosition:
	if not isinstance(value, Mapping):
		return NodePosition()
	coords = {}
	for axis in ("x", "y"):
		item = value.get(axis)
		if isinstance(item, (int, float)) and not isinstance(item, bool) and math.isfinite(item):
			coords[axis] = float(item)
	return NodePosition(**coords)


def _coerce_input_source(value: Any) -> Optional[InputSource]:
	if isinstance(value, InputSource):
		return value
	if not isinstance(value, Mapping):
		return None
	try:
		source = InputSource.model_validate(value)
	except ValidationError:
		return None
	if not source.source_node_id or not source.output_name:
		return None
	return source


def _first_str(*values: Any) -> Optional[str]:
	for value in values:
		if isinstance(value, str) and value:
			return value
	return None


def coerce_node(raw: Any, registry: BlockRegistry) -> Optional[FlowNode]:
	"""Build a FlowNode from a model or a raw editor dict; None when unusable"""
	if isinstance(raw, (FlowNode, ConnectedNode)):
		raw = {
			"id"           : raw.id,
			"blockType"    : raw.block_type,
			"inputs"       : dict(raw.inputs),
			"inputSources" : dict(raw.input_sources),
			"position"     : raw.position.model_dump() if isinstance(raw, FlowNode) else None,
			"extra"        : dict(raw.extra) if isinstance(raw, FlowNode) else {},
		}
	if not isinstance(raw, Mapping):
		return None

	node_id = _coerce_id(raw.get("id"))
	if node_id is None:
		return None

	data = raw.get("data")
	if not isinstance(data, Mapping):
		data = {}

	block_type = _first_str(raw.get("blockType"), raw.get("block_type"), data.get("blockType"), raw.get("type")) or "unknown"
	block      = registry.get(block_type)

	values: Dict[str, Any] = {}
	for source in (raw.get("extra"), data, raw.get("inputs")):
		if isinstance(source, Mapping):
			for key, value in source.items():
				if isinstance(key, str) and key not in _RESERVED_DATA_KEYS:
					values[key] = value

	inputs : Dict[str, str] = {}
	extra  : Dict[str, Any] = {}
	for key, value in values.items():
		literal  = _coerce_scalar(value)
		is_input = block.get_input(key) is not None if block is not None else key not in _UI_DATA_KEYS
		if is_input and literal is not None:
			inputs[key] = literal
		elif value is not None:
			extra[key] = value

	sources: Dict[str, InputSource] = {}
	for container in (data, raw):
		for key in ("inputSources", "input_sources"):
			bindings = container.get(key)
			if not isinstance(bindings, Mapping):
				continue
			for field_name, binding in bindings.items():
				source = _coerce_input_source(binding)
				if isinstance(field_name, str) and source is not None and field_name not in sources:
					sources[field_name] = source

	return FlowNode(
		id            = node_id,
		block_type    = block_type,
		inputs        = inputs,
		input_sources = sources,
		position      = _coerce_position(raw.get("position")),
		extra         = extra,
	)


def coerce_edge(raw: Any, index: int = 0) -> Optional[FlowEdge]:
	if isinstance(raw, FlowEdge):
		return raw.model_copy()
	if not isinstance(raw, Mapping):
		return None
	source = _coerce_id(raw.get("source"))
	target = _coerce_id(raw.get("target"))
	if source is None or target is None:
		return None
	edge_id = _coerce_id(raw.get("id")) or f"e-{source}-{target}-{index}"
	return FlowEdge(
		id            = edge_id,
		source        = source,
		target        = target,
		source_handle = _coerce_handle(raw.get("sourceHandle", raw.get("source_handle"))),
		target_handle = _coerce_handle(raw.get("targetHandle", raw.get("target_handle"))),
	)


# =============================================================================
# NORMALIZATION
# =============================================================================

def _binding_output_name(
	source_node   : FlowNode,
	source_handle : Optional[str],
	registry      : BlockRegistry,
	context       : ConnectionContext,
) -> Optional[str]:
	block = registry.get(source_node.block_type)
	if block is None:
		if source_handle and source_handle != EXEC_OUT_HANDLE:
			return source_handle
		return None
	output = resolve_source_output(source_node, block, source_handle, registry, context)
	return output.name if output is not None else None


def _clean_binding(
	node     : FlowNode,
	field    : str,
	binding  : InputSource,
	nodes    : Mapping[str, FlowNode],
	registry : BlockRegistry,
	context  : ConnectionContext,
) -> Optional[InputSource]:
	source_node = nodes.get(binding.source_node_id)
	if source_node is None or source_node.id == node.id:
		return None
	if registry.is_trigger(node.block_type):
		return None
	verdict = is_valid_connection(source_node, node, binding.output_name, field, registry, context)
	if not verdict.valid:
		return None
	output_name = _binding_output_name(source_node, binding.output_name, registry, context) or binding.output_name
	if output_name == binding.output_name:
		return binding
	return InputSource(source_node_id=binding.source_node_id, output_name=output_name)


def normalize(
	nodes    : Iterable[Any],
	edges    : Iterable[Any],
	registry : BlockRegistry,
) -> Tuple[List[FlowNode], List[FlowEdge]]:
	"""
	Canonicalize editor state.

	Returns deduplicated nodes (first occurrence wins) carrying their data bindings
	in `input_sources`, and execution-only edges (`exec-out -> exec-in`, never into
	a trigger). Legacy data edges become bindings plus an execution edge so the
	activation order is preserved.
	"""
	node_list : List[FlowNode]      = []
	by_id     : Dict[str, FlowNode] = {}
	for raw in nodes or []:
		node = coerce_node(raw, registry)
		if node is None or node.id in by_id:
			continue
		by_id[node.id] = node
		node_list.append(node)

	raw_edges: List[FlowEdge] = []
	for index, raw in enumerate(edges or []):
		edge = coerce_edge(raw, index)
		if edge is None or edge.source not in by_id or edge.target not in by_id:
			continue
		raw_edges.append(edge)

	context    = ConnectionContext(node_list, raw_edges)
	migrated   : Dict[str, Dict[str, InputSource]] = defaultdict(dict)
	candidates : List[FlowEdge]                    = []

	for edge in raw_edges:
		if edge.source == edge.target:
			continue
		source_node = by_id[edge.source]
		target_node = by_id[edge.target]

		if edge.target_handle == EXEC_IN_HANDLE:
			candidates.append(edge.model_copy(update={"source_handle": EXEC_OUT_HANDLE}))
			continue

		# Legacy data edge
		if registry.is_trigger(target_node.block_type):
			continue
		if edge.target_handle:
			verdict = is_valid_connection(source_node, target_node, edge.source_handle, edge.target_handle, registry, context)
			if not verdict.valid:
				continue
			output_name = _binding_output_name(source_node, edge.source_handle, registry, context)
			if output_name is not None and edge.target_handle not in migrated[target_node.id]:
				migrated[target_node.id][edge.target_handle] = InputSource(
					source_node_id = source_node.id,
					output_name    = output_name,
				)
		candidates.append(FlowEdge(
			id            = edge.id,
			source        = edge.source,
			target        = edge.target,
			source_handle = EXEC_OUT_HANDLE,
			target_handle = EXEC_IN_HANDLE,
		))

	result_nodes: List[FlowNode] = []
	for node in node_list:
		sources: Dict[str, InputSource] = {}
		for field, binding in list(node.input_sources.items()) + list(migrated.get(node.id, {}).items()):
			if field in sources:
				continue
			cleaned = _clean_binding(node, field, binding, by_id, registry, context)
			if cleaned is not None:
				sources[field] = cleaned
		result_nodes.append(node.model_copy(update={"input_sources": sources}))

	result_edges : List[FlowEdge]        = []
	seen_ids     : Set[str]              = set()
	seen_pairs   : Set[Tuple[str, str]]  = set()
	for edge in candidates:
		if not edge.is_execution:
			continue
		if registry.is_trigger(by_id[edge.target].block_type):
			continue
		pair = (edge.source, edge.target)
		if edge.id in seen_ids or pair in seen_pairs:
			continue
		seen_ids.add(edge.id)
		seen_pairs.add(pair)
		result_edges.append(edge)

	return result_nodes, result_edges


def normalize_flow(flow: Flow, registry: BlockRegistry) -> Flow:
	nodes, edges = normalize(flow.nodes, flow.edges, registry)
	return Flow.from_graph(nodes, edges)


def build_connected_model(
	nodes    : Iterable[Any],
	edges    : Iterable[Any],
	registry : BlockRegistry,
) -> ConnectedModel:
	"""Normalize, then attach incoming/outgoing execution connections to every node"""
	flow_nodes, flow_edges = normalize(nodes, edges, registry)

	incoming : Dict[str, List[InputConnection ]] = defaultdict(list)
	outgoing : Dict[str, List[OutputConnection]] = defaultdict(list)
	for edge in flow_edges:
		outgoing[edge.source].append(OutputConnection(
			target_node_id = edge.target,
			target_handle  = edge.target_handle,
			edge_id        = edge.id,
		))
		incoming[edge.target].append(InputConnection(
			source_node_id = edge.source,
			source_handle  = edge.source_handle,
			edge_id        = edge.id,
		))

	connected = [
		ConnectedNode(
			id            = node.id,
			block_type    = node.block_type,
			inputs        = node.inputs,
			input_sources = node.input_sources,
			incoming      = incoming.get(node.id, []),
			outgoing      = outgoing.get(node.id, []),
		)
		for node in flow_nodes
	]
	return ConnectedModel(nodes=connected, edges=flow_edges)
