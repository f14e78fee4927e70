# engine

import asyncio
import json
import re


from   collections import OrderedDict
from   enum        import Enum
from   pydantic    import BaseModel, ConfigDict, Field
from   typing      import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple


from   .blocks     import BlockDefinition, BlockRegistry, RunContext
from   .event_bus  import EventBus, EventType
from   .schema     import DEFAULT_MAX_RUN_HISTORY, DISPLAY_DATA_INPUT, BlockCategory, ConnectedModel, ConnectedNode, generate_id
from   .utils      import get_now_str, log_print, stringify_outputs
from   .variables  import OutputCache, is_unresolved, resolve_variables


_ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")


class RunStatus(str, Enum):
	"""Status of a whole run"""
	PENDING   = "pending"
	RUNNING   = "running"
	COMPLETED = "completed"
	FAILED    = "failed"
	CANCELLED = "cancelled"


class NodeRunStatus(str, Enum):
	"""Status of a node during a run"""
	PENDING   = "pending"
	RUNNING   = "running"
	COMPLETED = "completed"
	FAILED    = "failed"
	SKIPPED   = "skipped"


class StartNodeError(Exception):
	"""The explicitly invoked start node failed, so the whole run failed"""

	def __init__(self, node_id: str, error: BaseException, run_id: Optional[str] = None):
		super().__init__(f"Start node {node_id} failed: {error}")
		self.node_id = node_id
		self.error   = error
		self.run_id  = run_id


class CancelToken:
	"""Set once; the engine stops dispatching new nodes and mutes side channels"""

	def __init__(self):
		self._cancelled = False

	def cancel(self):
		self._cancelled = True

	@property
	def is_cancelled(self) -> bool:
		return self._cancelled


class RunOptions(BaseModel):
	model_config = ConfigDict(arbitrary_types_allowed=True)

	on_update    : Optional[Callable[[str, str], Any]]           = None   # (node_id, serialized outputs)
	on_error     : Optional[Callable[[str, BaseException], Any]] = None   # (node_id, exception)
	cancel_token : CancelToken                                   = Field(default_factory=CancelToken)


class RunState(BaseModel):
	"""State of a single run"""
	run_id        : str
	agent_id      : Optional[str]                = None
	start_node_id : str
	status        : RunStatus                    = RunStatus.PENDING
	node_status   : Dict[str, NodeRunStatus]     = Field(default_factory=dict)
	outputs       : Dict[str, Dict[str, str]]    = Field(default_factory=dict)
	errors        : Dict[str, str]               = Field(default_factory=dict)
	start_time    : Optional[str]                = None
	end_time      : Optional[str]                = None
	error         : Optional[str]                = None

	def nodes_with(self, status: NodeRunStatus) -> List[str]:
		return [node_id for node_id, value in self.node_status.items() if value == status]


class RunResult(BaseModel):
	run_id  : str
	status  : RunStatus
	outputs : Dict[str, Dict[str, str]] = Field(default_factory=dict)
	failed  : Dict[str, str]            = Field(default_factory=dict)
	skipped : List[str]                 = Field(default_factory=list)


def is_address(value: Optional[str]) -> bool:
	return isinstance(value, str) and _ADDRESS_PATTERN.match(value) is not None


def compute_effective_inputs(
	node         : ConnectedNode,
	block        : BlockDefinition,
	output_cache : Mapping[str, Mapping[str, str]],
	context      : Optional[RunContext] = None,
) -> Dict[str, str]:
	"""
	Inputs handed to `block.run` for one node.

	For every declared field the literal is the node's value, else the field
	default, else "". An `input_sources` binding pulls the producer's cached output
	(falling back to the resolved literal); otherwise the literal is variable
	resolved. Wallet inputs fall back to the context wallet when not an address.
	"""
	inputs = {name: resolve_variables(value, output_cache) for name, value in node.inputs.items()}

	for field in block.inputs:
		literal = node.inputs.get(field.name)
		if literal is None:
			literal = field.default_value if field.default_value is not None else ""

		value   = resolve_variables(literal, output_cache)
		binding = node.input_sources.get(field.name)
		if binding is not None:
			produced = output_cache.get(binding.source_node_id, {}).get(binding.output_name)
			if produced is not None:
				value = produced

		if field.is_wallet and not is_address(value) and context is not None and context.wallet_address:
			value = context.wallet_address

		inputs[field.name] = value

	return inputs


class AgentEngine:
	"""Frontier-based execution of the subgraph downstream of a start node"""

	def __init__(self, event_bus: EventBus, registry: BlockRegistry, max_history: int = DEFAULT_MAX_RUN_HISTORY):
		self.event_bus   : EventBus                     = event_bus
		self.registry    : BlockRegistry                = registry
		self.runs        : "OrderedDict[str, RunState]" = OrderedDict()
		self.max_history : int                          = max_history
		self._callbacks  : Set[asyncio.Future]          = set()


	# =========================================================================
	# RUN HISTORY
	# =========================================================================

	def _remember(self, state: RunState):
		self.runs[state.run_id] = state
		while len(self.runs) > self.max_history:
			self.runs.popitem(last=False)


	def get_run(self, run_id: str) -> Optional[RunState]:
		return self.runs.get(run_id)


	def list_runs(self, agent_id: Optional[str] = None) -> List[RunState]:
		runs = list(self.runs.values())
		if agent_id:
			runs = [run for run in runs if run.agent_id == agent_id]
		return runs


	# =========================================================================
	# SIDE CHANNELS
	# =========================================================================

	def _fire(self, callback: Optional[Callable], *args: Any):
		"""Invoke a caller callback without ever blocking or breaking the traversal"""
		if callback is None:
			return
		try:
			result = callback(*args)
		except Exception as e:
			log_print(f"Run callback raised: {e}")
			return
		if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
			future = asyncio.ensure_future(result)
			self._callbacks.add(future)
			future.add_done_callback(self._callback_done)


	def _callback_done(self, future: asyncio.Future):
		self._callbacks.discard(future)
		if not future.cancelled() and future.exception() is not None:
			log_print(f"Run callback raised: {future.exception()}")


	# =========================================================================
	# EXECUTION
	# =========================================================================

	async def _execute_node(self,
		state   : RunState,
		node    : ConnectedNode,
		block   : BlockDefinition,
		cache   : OutputCache,
		context : RunContext,
	) -> Tuple[str, Optional[Dict[str, str]], Optional[BaseException]]:
		"""Execute a single node; errors are returned, never raised"""
		inputs = compute_effective_inputs(node, block, cache, context)

		for name, value in inputs.items():
			if is_unresolved(value):
				log_print(f"Unresolved variable {value} in {node.id}.{name}")
				await self.event_bus.emit(
					event_type = EventType.VARIABLE_UNRESOLVED,
					agent_id   = state.agent_id,
					run_id     = state.run_id,
					node_id    = node.id,
					data       = {"input": name, "value": value}
				)

		state.node_status[node.id] = NodeRunStatus.RUNNING
		await self.event_bus.emit(
			event_type = EventType.NODE_STARTED,
			agent_id   = state.agent_id,
			run_id     = state.run_id,
			node_id    = node.id,
			data       = {"block_type": node.block_type}
		)

		try:
			result = await block.invoke(inputs, context.for_node(node.id))
			if result is None:
				result = {}
			if not isinstance(result, Mapping):
				raise TypeError(f"Block {block.type} returned {type(result).__name__}, expected a mapping")
		except Exception as e:
			return node.id, None, e

		outputs = stringify_outputs(result)

		# Display blocks re-export what their data producer emitted
		binding = node.input_sources.get(DISPLAY_DATA_INPUT)
		if block.category == BlockCategory.DISPLAY and binding is not None and binding.source_node_id in cache:
			outputs = {**cache[binding.source_node_id], **outputs}

		return node.id, outputs, None


	async def _complete_node(self, state: RunState, node_id: str, outputs: Dict[str, str], cache: OutputCache, options: RunOptions):
		cache[node_id] = outputs
		state.node_status[node_id] = NodeRunStatus.COMPLETED

		# Torn-down runs finish silently: outputs stay in the cache only
		cancelled = options.cancel_token.is_cancelled
		await self.event_bus.emit(
			event_type = EventType.NODE_COMPLETED,
			agent_id   = state.agent_id,
			run_id     = state.run_id,
			node_id    = node_id,
			data       = {"cancelled": True} if cancelled else {"outputs": outputs}
		)
		if not cancelled:
			self._fire(options.on_update, node_id, json.dumps(outputs))


	async def _fail_node(self, state: RunState, node_id: str, error: BaseException):
		state.node_status[node_id] = NodeRunStatus.FAILED
		state.errors[node_id]      = str(error)
		log_print(f"Node {node_id} failed: {error}")
		await self.event_bus.emit(
			event_type = EventType.NODE_FAILED,
			agent_id   = state.agent_id,
			run_id     = state.run_id,
			node_id    = node_id,
			error      = str(error)
		)


	async def _skip_node(self, state: RunState, node_id: str, reason: str):
		state.node_status[node_id] = NodeRunStatus.SKIPPED
		await self.event_bus.emit(
			event_type = EventType.NODE_SKIPPED,
			agent_id   = state.agent_id,
			run_id     = state.run_id,
			node_id    = node_id,
			data       = {"reason": reason}
		)


	async def _finish(self, state: RunState, status: RunStatus) -> RunResult:
		state.status   = status
		state.end_time = get_now_str()

		event_type = {
			RunStatus.COMPLETED : EventType.RUN_COMPLETED,
			RunStatus.CANCELLED : EventType.RUN_CANCELLED,
			RunStatus.FAILED    : EventType.RUN_FAILED,
		}[status]
		await self.event_bus.emit(
			event_type = event_type,
			agent_id   = state.agent_id,
			run_id     = state.run_id,
			node_id    = state.start_node_id,
			data       = {
				"failed"  : dict(state.errors),
				"skipped" : state.nodes_with(NodeRunStatus.SKIPPED),
			},
			error      = state.error
		)

		return RunResult(
			run_id  = state.run_id,
			status  = status,
			outputs = state.outputs,
			failed  = dict(state.errors),
			skipped = state.nodes_with(NodeRunStatus.SKIPPED),
		)


	async def run_downstream_graph(self,
		model           : ConnectedModel,
		start_node_id   : str,
		trigger_outputs : Optional[Mapping[str, Any]] = None,
		context         : Optional[RunContext]        = None,
		options         : Optional[RunOptions]        = None,
	) -> RunResult:
		"""
		Run everything reachable from `start_node_id` over execution edges.

		With `trigger_outputs` the cache is seeded with them and the start node is
		not run; without them the start node runs first and its failure raises
		`StartNodeError`. Downstream failures only skip the failing branch.
		"""
		context = context or RunContext()
		options = options or RunOptions()
		token   = options.cancel_token

		state = RunState(
			run_id        = generate_id(),
			agent_id      = context.agent_id,
			start_node_id = start_node_id,
			status        = RunStatus.RUNNING,
			start_time    = get_now_str(),
		)
		cache: OutputCache = state.outputs
		self._remember(state)

		await self.event_bus.emit(
			event_type = EventType.RUN_STARTED,
			agent_id   = state.agent_id,
			run_id     = state.run_id,
			node_id    = start_node_id,
			data       = {"trigger_outputs": dict(trigger_outputs) if trigger_outputs is not None else None}
		)

		start       = model.get_node(start_node_id)
		start_block = self.registry.get(start.block_type) if start is not None else None
		if start is None or start_block is None:
			log_print(f"Start node {start_node_id} is unknown or inert, nothing to run")
			return await self._finish(state, RunStatus.COMPLETED)

		if token.is_cancelled:
			return await self._finish(state, RunStatus.CANCELLED)

		if trigger_outputs is not None:
			cache[start.id] = stringify_outputs(trigger_outputs)
			state.node_status[start.id] = NodeRunStatus.COMPLETED
		else:
			_, outputs, error = await self._execute_node(state, start, start_block, cache, context)
			if error is not None:
				await self._fail_node(state, start.id, error)
				state.error = str(error)
				await self._finish(state, RunStatus.FAILED)
				raise StartNodeError(start.id, error, state.run_id) from error
			await self._complete_node(state, start.id, outputs, cache, options)

		# Scope and in-scope dependencies
		scope        = model.reachable_from(start.id)
		dependencies : Dict[str, Set[str]] = {}
		for node_id in scope:
			node = model.get_node(node_id)
			dependencies[node_id] = {p for p in node.predecessors if p in scope or p == start.id}

		pending   : Set[str] = set(scope)
		completed : Set[str] = {start.id}
		blocked   : Set[str] = set()   # failed or skipped
		for node_id in scope:
			state.node_status[node_id] = NodeRunStatus.PENDING

		tasks: Set[asyncio.Task] = set()

		# Main execution loop
		while True:
			ready: List[ConnectedNode] = []
			changed = True
			while changed:
				changed = False
				for node in model.nodes:
					if node.id not in pending:
						continue
					deps = dependencies[node.id]
					if deps & blocked:
						pending.discard(node.id)
						blocked.add(node.id)
						await self._skip_node(state, node.id, "upstream node failed or was skipped")
						changed = True
					elif deps <= completed:
						if self.registry.get(node.block_type) is None:
							pending.discard(node.id)
							blocked.add(node.id)
							await self._skip_node(state, node.id, f"unknown block type {node.block_type}")
							changed = True
						elif not token.is_cancelled:
							pending.discard(node.id)
							ready.append(node)

			for node in ready:
				block = self.registry.get(node.block_type)
				tasks.add(asyncio.create_task(self._execute_node(state, node, block, cache, context)))

			if not tasks:
				break

			done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
			for task in done:
				tasks.remove(task)
				node_id, outputs, error = task.result()
				if error is None:
					completed.add(node_id)
					await self._complete_node(state, node_id, outputs, cache, options)
				else:
					blocked.add(node_id)
					await self._fail_node(state, node_id, error)
					self._fire(options.on_error, node_id, error)

		if token.is_cancelled:
			return await self._finish(state, RunStatus.CANCELLED)

		# Nodes left waiting on each other (execution cycle)
		for node in model.nodes:
			if node.id in pending:
				pending.discard(node.id)
				await self._skip_node(state, node.id, "dependency cycle")

		return await self._finish(state, RunStatus.COMPLETED)
