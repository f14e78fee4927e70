# event_bus

from   collections import deque
from   datetime    import datetime
from   enum        import Enum
from   fastapi     import WebSocket
from   inspect     import iscoroutinefunction
from   pydantic    import BaseModel
from   typing      import Any, Callable, Deque, Dict, List, Optional


from   .utils      import log_print


DEFAULT_EVENT_HISTORY : int = 1000
DEFAULT_SNAPSHOT_SIZE : int = 50


class EventType(str, Enum):
	# Manager events
	MANAGER_CLEARED          = "manager.cleared"
	AGENT_DEPLOYED           = "agent.deployed"
	AGENT_UPDATED            = "agent.updated"
	AGENT_REMOVED            = "agent.removed"
	AGENT_ACTIVATED          = "agent.activated"
	AGENT_DEACTIVATED        = "agent.deactivated"

	# Run events
	RUN_STARTED              = "run.started"
	RUN_COMPLETED            = "run.completed"
	RUN_FAILED               = "run.failed"
	RUN_CANCELLED            = "run.cancelled"

	# Node events
	NODE_STARTED             = "node.started"
	NODE_COMPLETED           = "node.completed"
	NODE_FAILED              = "node.failed"
	NODE_SKIPPED             = "node.skipped"

	# Data events
	VARIABLE_UNRESOLVED      = "variable.unresolved"

	# Trigger / subscription events
	TRIGGER_FIRED            = "trigger.fired"
	TRIGGER_DROPPED          = "trigger.dropped"
	SUBSCRIPTION_STARTED     = "subscription.started"
	SUBSCRIPTION_FAILED      = "subscription.failed"
	SUBSCRIPTION_RETRYING    = "subscription.retrying"
	SUBSCRIPTION_STOPPED     = "subscription.stopped"


class AgentEvent(BaseModel):
	event_id   : str
	event_type : EventType
	timestamp  : str
	agent_id   : Optional[str]            = None
	run_id     : Optional[str]            = None
	node_id    : Optional[str]            = None
	data       : Optional[Dict[str, Any]] = None
	error      : Optional[str]            = None

	def matches(self,
		agent_id   : Optional[str]       = None,
		run_id     : Optional[str]       = None,
		event_type : Optional[EventType] = None,
	) -> bool:
		if agent_id and self.agent_id != agent_id:
			return False
		if run_id and self.run_id != run_id:
			return False
		if event_type and self.event_type != event_type:
			return False
		return True


class EventBus:
	"""
	Fan-out of agent, run and subscription events.
	Local callbacks see every event of their type; WebSocket clients may
	follow a single agent. A bounded history backs the snapshot sent to
	new clients and the `/events/history` route.
	"""

	def __init__(self, max_history: int = DEFAULT_EVENT_HISTORY):
		self._subscribers       : Dict[EventType, List[Callable]]     = {}
		self._websocket_clients : Dict[WebSocket, Optional[str]]      = {}   # client -> agent filter
		self._event_history     : Deque[AgentEvent]                   = deque(maxlen=max_history)
		self._event_counter     : int                                 = 0


	def subscribe(self, event_type: EventType, callback: Callable):
		self._subscribers.setdefault(event_type, []).append(callback)


	def unsubscribe(self, event_type: EventType, callback: Callable):
		callbacks = self._subscribers.get(event_type, [])
		if callback in callbacks:
			callbacks.remove(callback)


	async def publish(self, event: AgentEvent):
		self._event_history.append(event)

		# Subscriber errors never reach the publisher
		for callback in list(self._subscribers.get(event.event_type, [])):
			try:
				if iscoroutinefunction(callback):
					await callback(event)
				else:
					callback(event)
			except Exception as e:
				log_print(f"Error in event subscriber for {event.event_type.value}: {e}")

		await self._broadcast_to_websockets(event)


	async def _broadcast_to_websockets(self, event: AgentEvent):
		if not self._websocket_clients:
			return

		message = {"type": "agent_event", "event": event.model_dump(mode="json")}

		dead_clients = []
		for client, agent_id in list(self._websocket_clients.items()):
			# Manager-wide events (no agent) reach every client
			if event.agent_id is not None and not event.matches(agent_id=agent_id):
				continue
			try:
				await client.send_json(message)
			except Exception:
				dead_clients.append(client)

		for client in dead_clients:
			self._websocket_clients.pop(client, None)


	async def add_websocket_client(self, websocket: WebSocket, agent_id: Optional[str] = None):
		"""Accept the client and send it the recent history it is allowed to see"""
		await websocket.accept()
		self._websocket_clients[websocket] = agent_id

		recent = self.history(agent_id=agent_id)[-DEFAULT_SNAPSHOT_SIZE:]
		if recent:
			await websocket.send_json({
				"type"   : "event_history",
				"events" : [e.model_dump(mode="json") for e in recent]
			})


	def remove_websocket_client(self, websocket: WebSocket):
		self._websocket_clients.pop(websocket, None)


	def history(self,
		agent_id   : Optional[str]       = None,
		run_id     : Optional[str]       = None,
		event_type : Optional[EventType] = None,
	) -> List[AgentEvent]:
		return [e for e in self._event_history if e.matches(agent_id, run_id, event_type)]


	def _generate_event_id(self) -> str:
		self._event_counter += 1
		timestamp = datetime.now().strftime("%Y%m%d%H%M%S%f")
		return f"evt_{timestamp}_{self._event_counter}"


	async def emit(self,
		event_type : EventType,
		agent_id   : Optional[str]            = None,
		run_id     : Optional[str]            = None,
		node_id    : Optional[str]            = None,
		data       : Optional[Dict[str, Any]] = None,
		error      : Optional[str]            = None
	):
		event = AgentEvent(
			event_id   = self._generate_event_id(),
			event_type = event_type,
			timestamp  = datetime.now().isoformat(),
			agent_id   = agent_id,
			run_id     = run_id,
			node_id    = node_id,
			data       = data,
			error      = error
		)
		await self.publish(event)


# Global event bus instance
_global_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
	"""Get or create global event bus instance"""
	global _global_event_bus
	if _global_event_bus is None:
		_global_event_bus = EventBus()
	return _global_event_bus


def reset_event_bus():
	"""Reset global event bus (useful for testing)"""
	global _global_event_bus
	_global_event_bus = None
