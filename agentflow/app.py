# app

import argparse
import asyncio
import os
import uvicorn


from   dotenv     import load_dotenv
from   fastapi    import FastAPI
from   typing     import Any, Optional


from   .api       import setup_api
from   .blocks    import BlockRegistry, RunContext
from   .builtins  import default_registry
from   .event_bus import EventBus, get_event_bus
from   .manager   import AgentManager
from   .schema    import (
	DEFAULT_MAX_QUEUED, DEFAULT_RETRY_BASE_DELAY, DEFAULT_RETRY_MAX_ATTEMPTS, DEFAULT_RETRY_MAX_DELAY,
	OverlapPolicy, RetryPolicy, SubscriptionOptions,
)
from   .utils     import add_middleware, log_print


load_dotenv()


DEFAULT_APP_HOST : str = "0.0.0.0"
DEFAULT_APP_PORT : int = 8000


def _env(name: str, default: Any, cast: Any = str) -> Any:
	value = os.getenv(name)
	if value is None or value == "":
		return default
	try:
		return cast(value)
	except ValueError:
		log_print(f"Warning: invalid value for {name}: {value!r}, using {default!r}")
		return default


def create_app(
	registry  : Optional[BlockRegistry]       = None,
	event_bus : Optional[EventBus]            = None,
	context   : Optional[RunContext]          = None,
	options   : Optional[SubscriptionOptions] = None,
) -> FastAPI:
	"""FastAPI app with a fresh AgentManager in `app.state.manager`; routes are added by `setup_api`"""
	registry  = registry  or default_registry()
	event_bus = event_bus or get_event_bus()

	app: FastAPI = FastAPI(title="agentflow")
	add_middleware(app)
	app.state.event_bus = event_bus
	app.state.manager   = AgentManager(registry, event_bus, context=context, options=options)
	return app


def build_app(
	registry  : Optional[BlockRegistry]       = None,
	event_bus : Optional[EventBus]            = None,
	context   : Optional[RunContext]          = None,
	options   : Optional[SubscriptionOptions] = None,
	server    : Any                           = None,
) -> FastAPI:
	app = create_app(registry, event_bus, context, options)
	setup_api(server, app, app.state.event_bus, app.state.manager)
	return app


async def run_server(args: Any):
	log_print("Server starting...")

	options = SubscriptionOptions(
		overlap    = OverlapPolicy(args.overlap),
		max_queued = args.max_queued,
		retry      = RetryPolicy(
			max_attempts = args.retry_max_attempts,
			base_delay   = args.retry_base_delay,
			max_delay    = args.retry_max_delay,
		),
	)
	context = RunContext(wallet_address=args.wallet or None)

	app     : FastAPI      = create_app(context=context, options=options)
	manager : AgentManager = app.state.manager

	config = uvicorn.Config(app, host=args.host, port=args.port)
	server = uvicorn.Server(config)

	setup_api(server, app, app.state.event_bus, manager)

	await server  .serve ()
	await manager .clear ()

	log_print("Server shut down.")


def main():
	parser = argparse.ArgumentParser(description="agentflow agent execution server")
	parser .add_argument("--host"              , type=str  , default=_env("AGENTFLOW_HOST"              , DEFAULT_APP_HOST                 ), help="Listening host"                                )
	parser .add_argument("--port"              , type=int  , default=_env("AGENTFLOW_PORT"              , DEFAULT_APP_PORT          , int  ), help="Listening port for control server"              )
	parser .add_argument("--overlap"           , type=str  , default=_env("AGENTFLOW_OVERLAP_POLICY"    , OverlapPolicy.QUEUE.value        ), choices=[p.value for p in OverlapPolicy], help="Policy for trigger firings that overlap a running flow")
	parser .add_argument("--max-queued"        , type=int  , default=_env("AGENTFLOW_MAX_QUEUED"        , DEFAULT_MAX_QUEUED        , int  ), help="Firings queued per node before dropping"        )
	parser .add_argument("--retry-max-attempts", type=int  , default=_env("AGENTFLOW_RETRY_MAX_ATTEMPTS", DEFAULT_RETRY_MAX_ATTEMPTS, int  ), help="Resubscribe attempts after a listener error"    )
	parser .add_argument("--retry-base-delay"  , type=float, default=_env("AGENTFLOW_RETRY_BASE_DELAY"  , DEFAULT_RETRY_BASE_DELAY  , float), help="First resubscribe delay in seconds"             )
	parser .add_argument("--retry-max-delay"   , type=float, default=_env("AGENTFLOW_RETRY_MAX_DELAY"   , DEFAULT_RETRY_MAX_DELAY   , float), help="Resubscribe delay cap in seconds"               )
	parser .add_argument("--wallet"            , type=str  , default=_env("AGENTFLOW_WALLET_ADDRESS"    , ""                               ), help="Wallet address used for wallet inputs"         )
	args   = parser.parse_args()

	asyncio.run(run_server(args))


if __name__ == "__main__":
	main()
