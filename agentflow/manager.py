# manager

from   typing        import Any, Dict, List, Optional


from   .blocks        import BlockRegistry, RunContext
from   .engine        import AgentEngine, RunOptions, RunResult
from   .event_bus     import EventBus, EventType
from   .normalizer    import build_connected_model, normalize_flow
from   .schema        import DeployedAgent, Flow, SubscriptionOptions, TriggerPayload
from   .subscriptions import AgentSubscription, SubscriptionManager
from   .utils         import get_now_str


class AgentManager:
	"""
	Deployed agents kept in memory.
	Every flow change rebuilds the canonical model and, for active agents, resubscribes.
	"""

	def __init__(self,
		registry      : BlockRegistry,
		event_bus     : EventBus,
		engine        : Optional[AgentEngine]         = None,
		subscriptions : Optional[SubscriptionManager] = None,
		context       : Optional[RunContext]          = None,
		options       : Optional[SubscriptionOptions] = None,
	):
		self._registry      : BlockRegistry            = registry
		self._event_bus     : EventBus                 = event_bus
		self._engine        : AgentEngine              = engine or AgentEngine(event_bus, registry)
		self._subscriptions : SubscriptionManager      = subscriptions or SubscriptionManager(self._engine, options)
		self._context       : RunContext               = context or RunContext()
		self._agents        : Dict[str, DeployedAgent] = {}
		self._activated     : Dict[str, RunContext]    = {}   # caller context per active agent


	@property
	def registry(self) -> BlockRegistry:
		return self._registry


	@property
	def engine(self) -> AgentEngine:
		return self._engine


	@property
	def subscriptions(self) -> SubscriptionManager:
		return self._subscriptions


	def _require(self, agent_id: str) -> DeployedAgent:
		agent = self._agents.get(agent_id)
		if agent is None:
			raise ValueError(f"Unknown agent: {agent_id}")
		return agent


	def _context_for(self, agent: DeployedAgent, context: Optional[RunContext] = None) -> RunContext:
		base = context or self._context
		return RunContext(
			wallet_address   = agent.wallet_address or base.wallet_address,
			send_transaction = base.send_transaction,
			sign_typed_data  = base.sign_typed_data,
			agent_id         = agent.id,
		)


	def _rebuild(self, agent: DeployedAgent, flow: Flow):
		agent.flow  = normalize_flow(flow, self._registry)
		agent.model = build_connected_model(agent.flow.nodes, agent.flow.edges, self._registry)


	async def _on_trigger(self, payload: TriggerPayload):
		await self._event_bus.emit(
			event_type = EventType.TRIGGER_FIRED,
			agent_id   = payload.agent_id,
			node_id    = payload.node_id,
			data       = {"outputs": payload.outputs}
		)


	def _subscribe(self, agent: DeployedAgent, context: Optional[RunContext] = None) -> AgentSubscription:
		return self._subscriptions.activate(
			agent.id,
			agent.model,
			self._context_for(agent, context),
			on_trigger = self._on_trigger,
		)


	async def deploy(self,
		name           : str,
		flow           : Optional[Flow] = None,
		description    : Optional[str]  = None,
		wallet_address : Optional[str]  = None,
		activate       : bool           = False,
	) -> DeployedAgent:
		agent = DeployedAgent(
			name           = name,
			description    = description,
			wallet_address = wallet_address,
		)
		self._rebuild(agent, flow or Flow())
		self._agents[agent.id] = agent
		await self._event_bus.emit(
			event_type = EventType.AGENT_DEPLOYED,
			agent_id   = agent.id,
			data       = {"name": name, "nodes": len(agent.model.nodes), "edges": len(agent.model.edges)}
		)
		if activate:
			await self.activate(agent.id)
		return agent


	async def update(self,
		agent_id       : str,
		flow           : Optional[Flow] = None,
		name           : Optional[str]  = None,
		description    : Optional[str]  = None,
		wallet_address : Optional[str]  = None,
	) -> DeployedAgent:
		agent = self._require(agent_id)
		if name is not None:
			agent.name = name
		if description is not None:
			agent.description = description
		if wallet_address is not None:
			agent.wallet_address = wallet_address or None
		if flow is not None:
			self._rebuild(agent, flow)
		agent.deployed_at = get_now_str()

		# Live agents pick up the new graph; the old listeners are torn down first
		if agent.is_active:
			self._subscribe(agent, self._activated.get(agent.id))

		await self._event_bus.emit(
			event_type = EventType.AGENT_UPDATED,
			agent_id   = agent.id,
			data       = {"active": agent.is_active}
		)
		return agent


	async def remove(self, agent_id: Optional[str] = None) -> bool:
		if not agent_id:
			ids = list(self._agents.keys())
		elif agent_id in self._agents:
			ids = [agent_id]
		else:
			return False
		for key in ids:
			self._subscriptions.deactivate(key)
			self._activated.pop(key, None)
			del self._agents[key]
			await self._event_bus.emit(
				event_type = EventType.AGENT_REMOVED,
				agent_id   = key,
			)
		return True


	def get(self, agent_id: str) -> Optional[DeployedAgent]:
		return self._agents.get(agent_id)


	def list(self) -> List[DeployedAgent]:
		return list(self._agents.values())


	async def activate(self, agent_id: str, context: Optional[RunContext] = None) -> AgentSubscription:
		agent        = self._require(agent_id)
		subscription = self._subscribe(agent, context)
		agent.is_active = True
		if context is not None:
			self._activated[agent.id] = context
		else:
			self._activated.pop(agent.id, None)
		await self._event_bus.emit(
			event_type = EventType.AGENT_ACTIVATED,
			agent_id   = agent.id,
			data       = {"nodes": [entry.node_id for entry in subscription.nodes]}
		)
		return subscription


	async def deactivate(self, agent_id: str) -> bool:
		agent = self._require(agent_id)
		stopped = self._subscriptions.deactivate(agent_id)
		self._activated.pop(agent_id, None)
		agent.is_active = False
		await self._event_bus.emit(
			event_type = EventType.AGENT_DEACTIVATED,
			agent_id   = agent.id,
			data       = {"stopped": stopped}
		)
		return stopped


	async def run_once(self,
		agent_id        : str,
		node_id         : Optional[str]            = None,
		trigger_outputs : Optional[Dict[str, Any]] = None,
		context         : Optional[RunContext]     = None,
		options         : Optional[RunOptions]     = None,
	) -> RunResult:
		"""Run directly through the engine, bypassing subscriptions"""
		agent = self._require(agent_id)
		if node_id is None:
			triggers = [node.id for node in agent.model.nodes if self._registry.is_trigger(node.block_type)]
			if not triggers:
				raise ValueError(f"Agent {agent_id} has no trigger node")
			node_id = triggers[0]
		elif agent.model.get_node(node_id) is None:
			raise ValueError(f"Unknown node {node_id} in agent {agent_id}")

		return await self._engine.run_downstream_graph(
			agent.model,
			node_id,
			trigger_outputs,
			self._context_for(agent, context),
			options,
		)


	def status(self) -> Dict[str, Any]:
		return {
			"agents"        : len(self._agents),
			"active"        : self._subscriptions.active_agents(),
			"blocks"        : len(self._registry),
			"runs"          : len(self._engine.runs),
			"subscriptions" : {
				agent_id: self._subscriptions.get(agent_id).describe()
				for agent_id in self._subscriptions.active_agents()
			},
		}


	async def clear(self):
		await self._subscriptions.shutdown()
		self._agents = {}
		self._activated = {}
		await self._event_bus.emit(
			event_type = EventType.MANAGER_CLEARED,
		)
