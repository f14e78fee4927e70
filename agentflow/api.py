# api

from   fastapi        import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from   pydantic       import Field
from   typing         import Any, Dict, List, Optional


from   .connections   import ConnectionContext, is_valid_connection
from   .engine        import StartNodeError
from   .event_bus     import EventBus, EventType
from   .manager       import AgentManager
from   .normalizer    import build_connected_model, coerce_edge, coerce_node, normalize_flow
from   .schema        import Flow, WireModel
from   .utils         import get_now_str, log_print, serialize_result


class NormalizeRequest(WireModel):
	flow : Flow


class ConnectionValidateRequest(WireModel):
	source        : str
	target        : str
	source_handle : Optional[str]        = None
	target_handle : Optional[str]        = None
	nodes         : List[Dict[str, Any]] = Field(default_factory=list)
	edges         : List[Dict[str, Any]] = Field(default_factory=list)


class AgentDeployRequest(WireModel):
	name           : str
	description    : Optional[str] = None
	flow           : Flow          = Field(default_factory=Flow)
	wallet_address : Optional[str] = None
	activate       : bool          = False


class AgentUpdateRequest(WireModel):
	name           : Optional[str]  = None
	description    : Optional[str]  = None
	flow           : Optional[Flow] = None
	wallet_address : Optional[str]  = None


class AgentRunRequest(WireModel):
	node_id         : Optional[str]            = None
	trigger_outputs : Optional[Dict[str, Any]] = None


def setup_api(server: Any, app: FastAPI, event_bus: EventBus, manager: AgentManager):

	registry = manager.registry


	@app.post("/shutdown")
	async def shutdown_server():
		nonlocal server
		manager.subscriptions.deactivate_all()
		if server and server.should_exit is False:
			server.should_exit = True
		server = None
		result = {
			"status"  : "none",
			"message" : "Server shut down",
		}
		return result


	def require_agent(agent_id: str):
		agent = manager.get(agent_id)
		if agent is None:
			raise HTTPException(status_code=404, detail=f"Agent '{agent_id}' not found")
		return agent


	@app.post("/ping")
	async def ping():
		result = {
			"message"   : "pong",
			"timestamp" : get_now_str(),
		}
		return result


	@app.post("/status")
	async def server_status():
		nonlocal manager
		result = {
			"status" : "ready",
			**manager.status(),
		}
		return result


	@app.post("/blocks")
	async def list_blocks():
		nonlocal registry
		result = {
			"blocks" : registry.describe(),
		}
		return result


	@app.post("/normalize")
	async def normalize_graph(request: NormalizeRequest):
		nonlocal registry
		flow   = normalize_flow(request.flow, registry)
		model  = build_connected_model(flow.nodes, flow.edges, registry)
		result = {
			"flow"  : serialize_result(flow),
			"model" : serialize_result(model),
		}
		return result


	@app.post("/connections/validate")
	async def validate_connection(request: ConnectionValidateRequest):
		nonlocal registry
		nodes   = [node for node in (coerce_node(raw, registry) for raw in request.nodes) if node is not None]
		edges   = [edge for edge in (coerce_edge(raw, i) for i, raw in enumerate(request.edges)) if edge is not None]
		by_id   = {node.id: node for node in reversed(nodes)}
		verdict = is_valid_connection(
			by_id.get(request.source),
			by_id.get(request.target),
			request.source_handle,
			request.target_handle,
			registry,
			ConnectionContext(nodes, edges),
		)
		return serialize_result(verdict)


	# =========================================================================
	# AGENTS
	# =========================================================================

	@app.post("/agents/deploy")
	async def deploy_agent(request: AgentDeployRequest):
		nonlocal manager
		try:
			agent = await manager.deploy(
				name           = request.name,
				flow           = request.flow,
				description    = request.description,
				wallet_address = request.wallet_address,
				activate       = request.activate,
			)
			result = {
				"agent"  : serialize_result(agent),
				"status" : "deployed",
			}
			return result
		except Exception as e:
			log_print(f"[API] /agents/deploy error: {e}")
			raise HTTPException(status_code=500, detail=str(e))


	@app.post("/agents/list")
	async def list_agents():
		nonlocal manager
		agents = manager.list()
		result = {
			"agents" : [
				{
					"id"          : agent.id,
					"name"        : agent.name,
					"description" : agent.description,
					"is_active"   : agent.is_active,
					"deployed_at" : agent.deployed_at,
				}
				for agent in agents
			],
		}
		return result


	@app.post("/agents/get/{agent_id}")
	async def get_agent(agent_id: str):
		nonlocal manager
		agent  = require_agent(agent_id)
		result = {
			"agent" : serialize_result(agent),
		}
		return result


	@app.post("/agents/update/{agent_id}")
	async def update_agent(agent_id: str, request: AgentUpdateRequest):
		nonlocal manager
		require_agent(agent_id)
		agent = await manager.update(
			agent_id,
			flow           = request.flow,
			name           = request.name,
			description    = request.description,
			wallet_address = request.wallet_address,
		)
		result = {
			"agent"  : serialize_result(agent),
			"status" : "updated",
		}
		return result


	@app.post("/agents/remove/{agent_id}")
	async def remove_agent(agent_id: str):
		nonlocal manager
		status = await manager.remove(agent_id)
		result = {
			"agent_id" : agent_id,
			"status"   : "removed" if status else "failed",
		}
		return result


	@app.post("/agents/activate/{agent_id}")
	async def activate_agent(agent_id: str):
		nonlocal manager
		require_agent(agent_id)
		subscription = await manager.activate(agent_id)
		result = {
			"agent_id"     : agent_id,
			"status"       : "active",
			"subscription" : subscription.describe(),
		}
		return result


	@app.post("/agents/deactivate/{agent_id}")
	async def deactivate_agent(agent_id: str):
		nonlocal manager
		require_agent(agent_id)
		stopped = await manager.deactivate(agent_id)
		result = {
			"agent_id" : agent_id,
			"status"   : "inactive",
			"stopped"  : stopped,
		}
		return result


	@app.post("/agents/run/{agent_id}")
	async def run_agent(agent_id: str, request: Optional[AgentRunRequest] = None):
		nonlocal manager
		require_agent(agent_id)
		request = request or AgentRunRequest()
		try:
			run = await manager.run_once(agent_id, request.node_id, request.trigger_outputs)
		except StartNodeError as e:
			raise HTTPException(status_code=500, detail=str(e))
		except ValueError as e:
			raise HTTPException(status_code=400, detail=str(e))
		result = {
			"run" : serialize_result(run),
		}
		return result


	# =========================================================================
	# RUNS
	# =========================================================================

	@app.post("/runs/list")
	async def list_runs(agent_id: Optional[str] = None):
		nonlocal manager
		runs   = manager.engine.list_runs(agent_id)
		result = {
			"runs" : [
				{
					"run_id"        : run.run_id,
					"agent_id"      : run.agent_id,
					"start_node_id" : run.start_node_id,
					"status"        : run.status.value,
					"start_time"    : run.start_time,
					"end_time"      : run.end_time,
				}
				for run in runs
			],
		}
		return result


	@app.post("/runs/get/{run_id}")
	async def get_run(run_id: str):
		nonlocal manager
		run = manager.engine.get_run(run_id)
		if run is None:
			raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")
		result = {
			"run" : serialize_result(run),
		}
		return result


	# =========================================================================
	# EVENTS
	# =========================================================================

	@app.post("/events/history")
	async def event_history(agent_id: Optional[str] = None, run_id: Optional[str] = None, event_type: Optional[EventType] = None):
		nonlocal event_bus
		events = event_bus.history(agent_id=agent_id, run_id=run_id, event_type=event_type)
		result = {
			"events" : [e.model_dump(mode="json") for e in events],
		}
		return result


	@app.websocket("/events")
	async def agent_events(websocket: WebSocket, agent_id: Optional[str] = None):
		nonlocal event_bus
		await event_bus.add_websocket_client(websocket, agent_id)
		try:
			while True:
				data = await websocket.receive_text()
				log_print(f"Received WebSocket message: {data}")
		except WebSocketDisconnect:
			log_print("WebSocket client disconnected")
		except Exception as e:
			log_print(f"WebSocket error: {e}")
		event_bus.remove_websocket_client(websocket)

