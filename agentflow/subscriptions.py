# Subscription Manager
#
# Keeps the long-running triggers of an active agent wired to the execution engine.
# Block listeners may call back from any thread; everything else happens on the loop.

import asyncio


from   enum      import Enum
from   typing    import Any, Callable, Coroutine, Dict, List, Optional, Set


from   .blocks    import BlockDefinition, BlockOutputs, RunContext, Unsubscribe
from   .engine    import AgentEngine, CancelToken, RunOptions, compute_effective_inputs
from   .event_bus import EventBus, EventType
from   .schema    import ConnectedModel, ConnectedNode, OverlapPolicy, SubscriptionOptions, TriggerPayload
from   .utils     import get_now_str, log_print, stringify_outputs


TriggerListener = Callable[[TriggerPayload], Any]


class NodeSubscriptionStatus(str, Enum):
	PENDING  = "pending"
	ACTIVE   = "active"
	RETRYING = "retrying"
	FAILED   = "failed"
	STOPPED  = "stopped"


# =============================================================================
# NODE SUBSCRIPTION
# =============================================================================

class NodeSubscription:
	"""
	One live `subscribe` call for one node.

	Holds the unsubscribe closure (released exactly once), the retry schedule for
	listener errors and the per-node execution guard for overlapping firings.
	"""

	def __init__(self, owner: "AgentSubscription", node: ConnectedNode, block: BlockDefinition, inputs: Dict[str, str]):
		self.owner      = owner
		self.node_id    = node.id
		self.block_type = node.block_type
		self.block      = block
		self.inputs     = inputs
		self.status     = NodeSubscriptionStatus.PENDING
		self.attempts   = 0
		self.last_error : Optional[str] = None
		self.fired      = 0
		self.dropped    = 0

		self._unsubscribe  : Optional[Unsubscribe]       = None
		self._retry_handle : Optional[asyncio.TimerHandle] = None
		self._generation   : int                           = 0
		self._closed       : bool                          = False
		self._pending      : int                           = 0   # accepted firings not yet finished
		self._lock         = asyncio.Lock()

	@property
	def is_busy(self) -> bool:
		return self._pending > 0

	def start(self):
		if self._closed:
			return
		self._retry_handle = None
		self._generation  += 1
		generation = self._generation
		loop       = self.owner.loop

		def on_trigger(outputs: BlockOutputs):
			if not loop.is_closed():
				loop.call_soon_threadsafe(self._handle_trigger, generation, outputs)

		def on_error(error: BaseException):
			if not loop.is_closed():
				loop.call_soon_threadsafe(self._handle_error, generation, error)

		try:
			unsubscribe = self.block.subscribe(self.inputs, on_trigger, on_error)
		except Exception as e:
			self._schedule_retry(e)
			return

		self._unsubscribe = unsubscribe if callable(unsubscribe) else None
		self.status       = NodeSubscriptionStatus.ACTIVE
		self.owner._emit(EventType.SUBSCRIPTION_STARTED, node_id=self.node_id, data={"attempts": self.attempts})

	def stop(self):
		if self._closed:
			return
		self._closed = True
		if self._retry_handle is not None:
			self._retry_handle.cancel()
			self._retry_handle = None
		self._release()
		self.status = NodeSubscriptionStatus.STOPPED

	def _release(self):
		unsubscribe, self._unsubscribe = self._unsubscribe, None
		if unsubscribe is None:
			return
		try:
			unsubscribe()
		except Exception as e:
			log_print(f"Error unsubscribing {self.owner.agent_id}/{self.node_id}: {e}")

	def _handle_error(self, generation: int, error: BaseException):
		if self._closed or generation != self._generation:
			return
		self._generation += 1
		self._release()
		self._schedule_retry(error)

	def _schedule_retry(self, error: BaseException):
		retry = self.owner.options.retry
		self.attempts  += 1
		self.last_error = str(error)
		log_print(f"Subscription {self.owner.agent_id}/{self.node_id} failed (attempt {self.attempts}): {error}")
		self.owner._emit(EventType.SUBSCRIPTION_FAILED, node_id=self.node_id, error=str(error), data={"attempts": self.attempts})

		if self._closed:
			return
		if self.attempts > retry.max_attempts:
			self.status = NodeSubscriptionStatus.FAILED
			return

		delay       = retry.delay_for(self.attempts)
		self.status = NodeSubscriptionStatus.RETRYING
		self.owner._emit(EventType.SUBSCRIPTION_RETRYING, node_id=self.node_id, data={"attempts": self.attempts, "delay": delay})
		self._retry_handle = self.owner.loop.call_later(delay, self.start)

	def _handle_trigger(self, generation: int, outputs: BlockOutputs):
		if self._closed or generation != self._generation or self.owner.cancel_token.is_cancelled:
			return

		self.attempts = 0
		self.status   = NodeSubscriptionStatus.ACTIVE

		options = self.owner.options
		if self.is_busy:
			waiting = self._pending - 1
			if options.overlap == OverlapPolicy.SKIP or waiting >= options.max_queued:
				self.dropped += 1
				self.owner._emit(EventType.TRIGGER_DROPPED, node_id=self.node_id, data={"policy": options.overlap.value})
				return

		self.fired    += 1
		self._pending += 1
		self.owner._track(self._run(stringify_outputs(outputs or {})))

	async def _run(self, outputs: Dict[str, str]):
		try:
			async with self._lock:
				if self.owner.cancel_token.is_cancelled:
					return
				await self.owner._run_from(self.node_id, outputs)
		finally:
			self._pending -= 1

	def describe(self) -> Dict[str, Any]:
		return {
			"node_id"    : self.node_id,
			"block_type" : self.block_type,
			"status"     : self.status.value,
			"attempts"   : self.attempts,
			"last_error" : self.last_error,
			"fired"      : self.fired,
			"dropped"    : self.dropped,
			"in_flight"  : self._pending,
		}


# =============================================================================
# AGENT SUBSCRIPTION
# =============================================================================

class AgentSubscription:
	"""
	Handle on all live subscriptions of one agent.

	`cancel()` is synchronous and idempotent: every unsubscribe closure runs exactly
	once and the shared cancel token stops in-flight runs from dispatching further
	nodes or reaching side channels. `aclose()` also waits for those runs.
	"""

	def __init__(self,
		agent_id   : str,
		model      : ConnectedModel,
		engine     : AgentEngine,
		context    : Optional[RunContext]          = None,
		options    : Optional[SubscriptionOptions] = None,
		on_trigger : Optional[TriggerListener]     = None,
		on_update  : Optional[Callable]            = None,
		on_error   : Optional[Callable]            = None,
	):
		self.agent_id     = agent_id
		self.model        = model
		self.engine       = engine
		self.event_bus    : EventBus = engine.event_bus
		self.context      = (context or RunContext()).for_agent(agent_id)
		self.options      = options or SubscriptionOptions()
		self.on_trigger   = on_trigger
		self.on_update    = on_update
		self.on_error     = on_error
		self.cancel_token = CancelToken()
		self.created_at   = get_now_str()
		self.loop         = asyncio.get_running_loop()
		self.nodes        : List[NodeSubscription] = []

		self._tasks  : Set[asyncio.Task] = set()   # runs
		self._aux    : Set[asyncio.Task] = set()   # event emission

	@property
	def is_active(self) -> bool:
		return not self.cancel_token.is_cancelled

	@property
	def in_flight(self) -> int:
		return len(self._tasks)

	def get_node(self, node_id: str) -> Optional[NodeSubscription]:
		for entry in self.nodes:
			if entry.node_id == node_id:
				return entry
		return None

	def start(self):
		registry = self.engine.registry
		for node in self.model.nodes:
			block = registry.get(node.block_type)
			if block is None or not block.can_subscribe:
				continue
			inputs = compute_effective_inputs(node, block, {}, self.context)
			entry  = NodeSubscription(self, node, block, inputs)
			self.nodes.append(entry)
			entry.start()

	def cancel(self):
		if self.cancel_token.is_cancelled:
			return
		self.cancel_token.cancel()
		for entry in self.nodes:
			entry.stop()
		self._emit(EventType.SUBSCRIPTION_STOPPED, data={"in_flight": self.in_flight})

	async def aclose(self):
		self.cancel()
		if self._tasks:
			await asyncio.gather(*list(self._tasks), return_exceptions=True)
		if self._aux:
			await asyncio.gather(*list(self._aux), return_exceptions=True)

	def _track(self, coro: Coroutine):
		task = self.loop.create_task(coro)
		self._tasks.add(task)
		task.add_done_callback(self._tasks.discard)

	def _emit(self, event_type: EventType, node_id: Optional[str] = None, data: Optional[Dict[str, Any]] = None, error: Optional[str] = None):
		task = self.loop.create_task(self.event_bus.emit(
			event_type = event_type,
			agent_id   = self.agent_id,
			node_id    = node_id,
			data       = data,
			error      = error,
		))
		self._aux.add(task)
		task.add_done_callback(self._aux.discard)

	async def _run_from(self, node_id: str, outputs: Dict[str, str]):
		payload = TriggerPayload(agent_id=self.agent_id, node_id=node_id, outputs=outputs)
		if self.on_trigger is not None:
			try:
				result = self.on_trigger(payload)
				if asyncio.iscoroutine(result):
					await result
			except Exception as e:
				log_print(f"Trigger listener for {self.agent_id}/{node_id} raised: {e}")

		options = RunOptions(
			on_update    = self.on_update,
			on_error     = self.on_error,
			cancel_token = self.cancel_token,
		)
		try:
			await self.engine.run_downstream_graph(self.model, node_id, outputs, self.context, options)
		except Exception as e:
			log_print(f"Run from {self.agent_id}/{node_id} failed: {e}")

	def describe(self) -> Dict[str, Any]:
		return {
			"agent_id"   : self.agent_id,
			"is_active"  : self.is_active,
			"in_flight"  : self.in_flight,
			"created_at" : self.created_at,
			"options"    : self.options.model_dump(mode="json"),
			"nodes"      : [entry.describe() for entry in self.nodes],
		}


# =============================================================================
# SUBSCRIPTION MANAGER
# =============================================================================

class SubscriptionManager:
	"""
	Owns at most one AgentSubscription per agent.
	Activation always tears down the previous handle before subscribing again.
	"""

	def __init__(self, engine: AgentEngine, options: Optional[SubscriptionOptions] = None):
		self.engine   = engine
		self.options  = options or SubscriptionOptions()
		self._active  : Dict[str, AgentSubscription] = {}

	def subscribe_to_agent(self,
		agent_id   : str,
		model      : ConnectedModel,
		context    : Optional[RunContext]          = None,
		on_trigger : Optional[TriggerListener]     = None,
		on_update  : Optional[Callable]            = None,
		on_error   : Optional[Callable]            = None,
		options    : Optional[SubscriptionOptions] = None,
	) -> AgentSubscription:
		"""Subscribe every subscribable node of `model`; must be called from the event loop"""
		subscription = AgentSubscription(
			agent_id   = agent_id,
			model      = model,
			engine     = self.engine,
			context    = context,
			options    = options or self.options,
			on_trigger = on_trigger,
			on_update  = on_update,
			on_error   = on_error,
		)
		subscription.start()
		return subscription

	def activate(self, agent_id: str, model: ConnectedModel, context: Optional[RunContext] = None, **kwargs: Any) -> AgentSubscription:
		self.deactivate(agent_id)
		subscription = self.subscribe_to_agent(agent_id, model, context, **kwargs)
		self._active[agent_id] = subscription
		return subscription

	def deactivate(self, agent_id: str) -> bool:
		subscription = self._active.pop(agent_id, None)
		if subscription is None:
			return False
		subscription.cancel()
		return True

	def deactivate_all(self):
		for agent_id in list(self._active.keys()):
			self.deactivate(agent_id)

	async def shutdown(self):
		"""Cancel everything and wait for in-flight runs"""
		subscriptions = list(self._active.values())
		self._active.clear()
		for subscription in subscriptions:
			await subscription.aclose()

	def get(self, agent_id: str) -> Optional[AgentSubscription]:
		return self._active.get(agent_id)

	def is_active(self, agent_id: str) -> bool:
		return agent_id in self._active

	def active_agents(self) -> List[str]:
		return list(self._active.keys())
