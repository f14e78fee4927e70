# utils

import json


from   datetime import datetime
from   fastapi  import FastAPI
from   fastapi.middleware.cors import CORSMiddleware
from   pydantic import BaseModel
from   typing   import Any, Dict


LOG_PREFIX : str = "[agentflow]"


def get_now_str() -> str:
	return datetime.now().isoformat()


def get_timestamp_str() -> str:
	return datetime.now().strftime("%Y%m%d%H%M%S%f")


def log_print(*args: Any, **kwargs: Any):
	"""Timestamped print, flushed immediately so it interleaves with uvicorn output"""
	kwargs.setdefault("flush", True)
	print(f"{get_now_str()} {LOG_PREFIX}", *args, **kwargs)


def serialize_result(value: Any) -> Any:
	"""Best-effort conversion of a result into JSON-compatible data"""
	if value is None or isinstance(value, (bool, int, float, str)):
		return value
	if isinstance(value, BaseModel):
		return value.model_dump(mode="json", by_alias=True)
	if isinstance(value, dict):
		return {str(key): serialize_result(item) for key, item in value.items()}
	if isinstance(value, (list, tuple, set, frozenset)):
		return [serialize_result(item) for item in value]
	try:
		json.dumps(value)
		return value
	except (TypeError, ValueError):
		return str(value)


def stringify_outputs(outputs: Any) -> Dict[str, str]:
	"""Coerce a block result into the string-keyed, string-valued wire shape"""
	result = {}
	for key, value in dict(outputs).items():
		if value is None:
			result[str(key)] = ""
		elif isinstance(value, str):
			result[str(key)] = value
		elif isinstance(value, bool):
			result[str(key)] = "true" if value else "false"
		elif isinstance(value, (dict, list, tuple)):
			result[str(key)] = json.dumps(serialize_result(value))
		else:
			result[str(key)] = str(value)
	return result


def add_middleware(app: FastAPI):
	app.add_middleware(
		CORSMiddleware,
		allow_origins     = ["*"],
		allow_credentials = True,
		allow_methods     = ["*"],
		allow_headers     = ["*"],
	)
