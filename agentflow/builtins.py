# builtins
#
# Generic, chain-agnostic blocks. Protocol-specific blocks (swaps, chain watchers,
# messaging) live outside this package and are added with `BlockRegistry.with_blocks`.

import asyncio
import json
import math
import re
import requests
import time


from   typing   import Callable, Dict, List, Optional


from   .blocks  import BlockDefinition, BlockOutputs, BlockRegistry, ErrorCallback, RunContext, TriggerCallback, Unsubscribe
from   .schema  import DISPLAY_DATA_INPUT, BlockCategory, InputField, InputFieldKind, OutputField, OutputType
from   .utils   import get_now_str, log_print


DEFAULT_TIME_LOOP_SECONDS  : float = 10.0
MIN_TIME_LOOP_SECONDS      : float = 1.0
MAX_DELAY_SECONDS          : float = 300.0
DEFAULT_WEBHOOK_TIMEOUT    : float = 30.0
DEFAULT_RATE_LIMIT_SECONDS : float = 60.0
MIN_RATE_LIMIT_SECONDS     : float = 1.0

COMPARATOR_OPERATORS : List[str] = [
	"equals", "not_equals", "greater_than", "less_than", "gte", "lte",
	"contains", "not_contains", "exists", "not_exists", "empty", "not_empty",
]


def _parse_float(value: Optional[str], default: float) -> float:
	try:
		result = float(value)
	except (TypeError, ValueError):
		return default
	return result if math.isfinite(result) else default


def _format_number(value: float) -> str:
	return str(int(value)) if float(value).is_integer() else str(value)


def _flag(value: bool) -> str:
	return "true" if value else "false"


# =============================================================================
# TRIGGERS
# =============================================================================

def manual_trigger(inputs: BlockOutputs, context: RunContext) -> BlockOutputs:
	return {
		"payload"     : inputs.get("payload", ""),
		"triggeredAt" : get_now_str(),
	}


def time_loop(inputs: BlockOutputs, context: RunContext) -> BlockOutputs:
	"""Manual run of a time loop fires once, immediately"""
	seconds = _parse_float(inputs.get("seconds"), DEFAULT_TIME_LOOP_SECONDS)
	if seconds <= 0:
		raise ValueError("Invalid interval value")
	return {"elapsed": "0s", "count": "0"}


def time_loop_subscribe(inputs: BlockOutputs, on_trigger: TriggerCallback, on_error: ErrorCallback) -> Unsubscribe:
	seconds  = _parse_float(inputs.get("seconds"), DEFAULT_TIME_LOOP_SECONDS)
	interval = max(MIN_TIME_LOOP_SECONDS, seconds)

	async def tick():
		count = 0
		while True:
			await asyncio.sleep(interval)
			count += 1
			on_trigger({"elapsed": f"{_format_number(seconds)}s", "count": str(count)})

	task = asyncio.get_running_loop().create_task(tick())
	return task.cancel


# =============================================================================
# FILTERS
# =============================================================================

def _comparable(left: str, right: str):
	a = left.strip()
	b = right.strip()
	try:
		na = float(a)
		nb = float(b)
	except ValueError:
		return a, b
	if a and b and math.isfinite(na) and math.isfinite(nb):
		return na, nb
	return a, b


def general_comparator(inputs: BlockOutputs, context: RunContext) -> BlockOutputs:
	top      = inputs.get("valueToFilterTop"   , "") or ""
	bottom   = inputs.get("valueToFilterBottom", "") or ""
	operator = inputs.get("operator") or "greater_than"

	left, right = _comparable(top, bottom)
	present     = top.strip() != ""

	if operator == "equals":
		passed = left == right
	elif operator == "not_equals":
		passed = left != right
	elif operator in ("greater_than", "less_than", "gte", "lte"):
		if type(left) is not type(right):
			left, right = str(left), str(right)
		passed = {
			"greater_than" : left >  right,
			"less_than"    : left <  right,
			"gte"          : left >= right,
			"lte"          : left <= right,
		}[operator]
	elif operator == "contains":
		passed = bottom in top
	elif operator == "not_contains":
		passed = bottom not in top
	elif operator in ("exists", "not_empty"):
		passed = present
	elif operator in ("not_exists", "empty"):
		passed = not present
	else:
		passed = left == right

	return {"passed": _flag(passed)}


def numeric_range_filter(inputs: BlockOutputs, context: RunContext) -> BlockOutputs:
	raw     = inputs.get("value", "") or ""
	minimum = _parse_float(inputs.get("min") or None, -math.inf)
	maximum = _parse_float(inputs.get("max") or None,  math.inf)
	try:
		number = float(raw)
	except ValueError:
		number = math.nan
	valid = raw.strip() != "" and math.isfinite(number) and minimum <= number <= maximum
	return {
		"passed"  : _flag(valid),
		"value"   : _format_number(number) if valid else raw,
		"inRange" : _flag(valid),
	}


def string_match_filter(inputs: BlockOutputs, context: RunContext) -> BlockOutputs:
	value   = inputs.get("value"  , "") or ""
	pattern = inputs.get("pattern", "") or ""
	mode    = inputs.get("mode") or "contains"

	matched = ""
	if mode == "contains":
		passed  = pattern in value
		matched = value
	elif mode == "equals":
		passed  = value.strip() == pattern.strip()
		matched = value
	else:
		try:
			found = re.search(pattern, value)
		except re.error:
			found = None
		passed  = found is not None
		matched = found.group(0) if found else ""

	return {
		"passed"  : _flag(passed),
		"matched" : matched,
		"value"   : value if passed else "",
	}


def conditional_branch(inputs: BlockOutputs, context: RunContext) -> BlockOutputs:
	raw    = inputs.get("condition", "") or ""
	truthy = raw != "" and raw.lower() != "false" and raw != "0"
	return {
		"true"  : "1" if truthy else "",
		"false" : "" if truthy else "1",
	}


async def delay_timer(inputs: BlockOutputs, context: RunContext) -> BlockOutputs:
	seconds = _parse_float(inputs.get("seconds"), 1.0)
	seconds = max(0.0, min(MAX_DELAY_SECONDS, seconds))
	await asyncio.sleep(seconds)
	return {"elapsed": f"{_format_number(seconds)}s"}


class RateLimiter:
	"""
	Lets a node pass at most once per `intervalSeconds`.
	Last pass times are kept per agent node for the life of the limiter.
	"""

	def __init__(self, clock: Callable[[], float] = time.monotonic):
		self._clock    : Callable[[], float] = clock
		self._last_run : Dict[str, float]    = {}

	def __call__(self, inputs: BlockOutputs, context: RunContext) -> BlockOutputs:
		interval = max(MIN_RATE_LIMIT_SECONDS, _parse_float(inputs.get("intervalSeconds"), DEFAULT_RATE_LIMIT_SECONDS))
		key      = f"{context.agent_id}:{context.node_id}" if context.agent_id else str(context.node_id)
		now      = self._clock()
		last     = self._last_run.get(key)
		elapsed  = None if last is None else now - last
		allowed  = elapsed is None or elapsed >= interval
		if allowed:
			self._last_run[key] = now
		return {
			"passed"        : _flag(allowed),
			"elapsed"       : f"{math.floor(elapsed or 0)}s",
			"nextAllowedIn" : "0" if allowed else str(math.ceil(interval - elapsed)),
		}


def rate_limit_block(limiter: Optional[RateLimiter] = None) -> BlockDefinition:
	return BlockDefinition(
		type        = "rateLimitFilter",
		label       = "Rate Limit",
		description = "Pass at most once per interval",
		category    = BlockCategory.FILTER,
		inputs      = [
			InputField(name="intervalSeconds", label="Interval (seconds)", kind=InputFieldKind.NUMBER, default_value="60"),
		],
		outputs     = [
			OutputField(name="passed"       , label="Passed"          , type=OutputType.BOOLEAN),
			OutputField(name="elapsed"      , label="Since Last Pass" , type=OutputType.STRING ),
			OutputField(name="nextAllowedIn", label="Next Allowed In" , type=OutputType.NUMBER ),
		],
		run         = limiter or RateLimiter(),
	)


# =============================================================================
# ACTIONS
# =============================================================================

_MERGE_SKIP_KEYS = {"mode", "separator"}


def merge_outputs(inputs: BlockOutputs, context: RunContext) -> BlockOutputs:
	mode   = inputs.get("mode") or "first"
	values = [
		str(value).strip()
		for key, value in inputs.items()
		if key not in _MERGE_SKIP_KEYS and value is not None and str(value).strip() != ""
	]
	if not values:
		return {"out": ""}
	if mode == "first":
		return {"out": values[0]}
	if mode == "concat":
		separator = inputs.get("separator")
		return {"out": (", " if separator is None else separator).join(values)}
	return {"out": json.dumps(values)}


def log_debug(inputs: BlockOutputs, context: RunContext) -> BlockOutputs:
	log_print("[Block Log/Debug]", inputs)
	passthrough = (inputs.get("passthrough") or "").strip()
	return {"out": passthrough or json.dumps(inputs)}


def _parse_headers(raw: Optional[str]) -> Dict[str, str]:
	headers: Dict[str, str] = {}
	try:
		pairs = json.loads(raw or "[]")
	except ValueError:
		return headers
	if isinstance(pairs, dict):
		pairs = [{"key": key, "value": value} for key, value in pairs.items()]
	if not isinstance(pairs, list):
		return headers
	for pair in pairs:
		if isinstance(pair, dict) and pair.get("key"):
			headers[str(pair["key"])] = str(pair.get("value", ""))
	return headers


def _send_request(method: str, url: str, headers: Dict[str, str], body: Optional[str], timeout: float) -> requests.Response:
	return requests.request(method, url, headers=headers, data=body, timeout=timeout)


async def webhook(inputs: BlockOutputs, context: RunContext) -> BlockOutputs:
	url = (inputs.get("url") or "").strip()
	if not url:
		raise ValueError("Webhook URL is required")
	if not url.startswith("http"):
		url = f"https://{url}"

	method  = (inputs.get("method") or "POST").upper()
	headers = {"Content-Type": "application/json"}
	headers.update(_parse_headers(inputs.get("headers")))
	body    = inputs.get("body") if method != "GET" else None

	response = await asyncio.to_thread(_send_request, method, url, headers, body, DEFAULT_WEBHOOK_TIMEOUT)
	return {"status": str(response.status_code), "response": response.text}


# =============================================================================
# DISPLAY
# =============================================================================

def stream_display(inputs: BlockOutputs, context: RunContext) -> BlockOutputs:
	return {DISPLAY_DATA_INPUT: inputs.get(DISPLAY_DATA_INPUT, "")}


# =============================================================================
# DEFINITIONS
# =============================================================================

BUILTIN_BLOCKS: List[BlockDefinition] = [
	BlockDefinition(
		type        = "manualTrigger",
		label       = "Manual Trigger",
		description = "Start the flow by hand",
		category    = BlockCategory.TRIGGER,
		inputs      = [
			InputField(name="payload", label="Payload", kind=InputFieldKind.TEXTAREA, default_value=""),
		],
		outputs     = [
			OutputField(name="payload"    , label="Payload"     , type=OutputType.JSON  ),
			OutputField(name="triggeredAt", label="Triggered At", type=OutputType.STRING),
		],
		run         = manual_trigger,
	),
	BlockDefinition(
		type        = "timeLoop",
		label       = "Time Loop",
		description = "Trigger every x seconds",
		category    = BlockCategory.TRIGGER,
		inputs      = [
			InputField(name="seconds", label="Seconds", kind=InputFieldKind.SLIDER, default_value="10"),
		],
		outputs     = [
			OutputField(name="elapsed", label="Time Elapsed", type=OutputType.STRING),
			OutputField(name="count"  , label="Tick Count"  , type=OutputType.NUMBER),
		],
		run         = time_loop,
		subscribe   = time_loop_subscribe,
	),
	BlockDefinition(
		type        = "generalComparator",
		label       = "Comparator",
		description = "Compare two values",
		category    = BlockCategory.FILTER,
		inputs      = [
			InputField(name="valueToFilterTop"   , label="Value"   , allow_variable=True),
			InputField(name="operator"           , label="Operator", kind=InputFieldKind.SELECT, options=COMPARATOR_OPERATORS, default_value="greater_than"),
			InputField(name="valueToFilterBottom", label="Compare To", allow_variable=True),
		],
		outputs     = [
			OutputField(name="passed", label="Passed", type=OutputType.BOOLEAN),
		],
		run         = general_comparator,
	),
	BlockDefinition(
		type        = "numericRangeFilter",
		label       = "Numeric Range",
		description = "Pass when a number lies within [min, max]",
		category    = BlockCategory.FILTER,
		inputs      = [
			InputField(name="value", label="Value", kind=InputFieldKind.NUMBER, allow_variable=True, accepts=[OutputType.NUMBER, OutputType.STRING]),
			InputField(name="min"  , label="Min"  , kind=InputFieldKind.NUMBER),
			InputField(name="max"  , label="Max"  , kind=InputFieldKind.NUMBER),
		],
		outputs     = [
			OutputField(name="passed" , label="Passed"  , type=OutputType.BOOLEAN),
			OutputField(name="value"  , label="Value"   , type=OutputType.NUMBER ),
			OutputField(name="inRange", label="In Range", type=OutputType.BOOLEAN),
		],
		run         = numeric_range_filter,
	),
	BlockDefinition(
		type        = "stringMatchFilter",
		label       = "String Match",
		description = "Pass when a string contains, equals or matches a pattern",
		category    = BlockCategory.FILTER,
		inputs      = [
			InputField(name="value"  , label="Value"  , allow_variable=True),
			InputField(name="pattern", label="Pattern"),
			InputField(name="mode"   , label="Mode"   , kind=InputFieldKind.SELECT, options=["contains", "equals", "regex"], default_value="contains"),
		],
		outputs     = [
			OutputField(name="passed" , label="Passed" , type=OutputType.BOOLEAN),
			OutputField(name="matched", label="Matched", type=OutputType.STRING ),
			OutputField(name="value"  , label="Value"  , type=OutputType.STRING ),
		],
		run         = string_match_filter,
	),
	BlockDefinition(
		type        = "conditionalBranch",
		label       = "If / Else",
		description = "Split on a condition",
		category    = BlockCategory.FILTER,
		inputs      = [
			InputField(name="condition", label="Condition", allow_variable=True),
		],
		outputs     = [
			OutputField(name="true" , label="True" , type=OutputType.BOOLEAN),
			OutputField(name="false", label="False", type=OutputType.BOOLEAN),
		],
		run         = conditional_branch,
	),
	BlockDefinition(
		type        = "delayTimer",
		label       = "Delay Timer",
		description = "Wait before continuing the flow",
		category    = BlockCategory.FILTER,
		inputs      = [
			InputField(name="seconds", label="Delay (seconds)", kind=InputFieldKind.SLIDER, default_value="10"),
		],
		outputs     = [
			OutputField(name="elapsed", label="Time Elapsed", type=OutputType.STRING),
		],
		run         = delay_timer,
	),
	rate_limit_block(),
	BlockDefinition(
		type        = "mergeOutputs",
		label       = "Merge",
		description = "Combine values or pick the first non-empty one",
		category    = BlockCategory.ACTION,
		inputs      = [
			InputField(name="a"        , label="A"        , allow_variable=True),
			InputField(name="b"        , label="B"        , allow_variable=True),
			InputField(name="mode"     , label="Mode"     , kind=InputFieldKind.SELECT, options=["first", "concat", "json"], default_value="first"),
			InputField(name="separator", label="Separator", default_value=", "),
		],
		outputs     = [
			OutputField(name="out", label="Merged", type=OutputType.STRING),
		],
		run         = merge_outputs,
	),
	BlockDefinition(
		type        = "logDebug",
		label       = "Log / Debug",
		description = "Log the inputs and pass a value through",
		category    = BlockCategory.ACTION,
		inputs      = [
			InputField(name="passthrough", label="Value", allow_variable=True),
		],
		outputs     = [
			OutputField(name="out", label="Output", type=OutputType.STRING),
		],
		run         = log_debug,
	),
	BlockDefinition(
		type        = "webhook",
		label       = "Webhook",
		description = "Send data to an external URL",
		category    = BlockCategory.ACTION,
		inputs      = [
			InputField(name="url"    , label="Webhook URL" , allow_variable=True),
			InputField(name="method" , label="Method"      , kind=InputFieldKind.SELECT, options=["POST", "GET", "PUT", "DELETE"], default_value="POST"),
			InputField(name="headers", label="Headers"     , kind=InputFieldKind.KEY_VALUE, default_value="[]"),
			InputField(name="body"   , label="Request Body", kind=InputFieldKind.TEXTAREA, allow_variable=True),
		],
		outputs     = [
			OutputField(name="status"  , label="Status Code"  , type=OutputType.NUMBER),
			OutputField(name="response", label="Response Body", type=OutputType.STRING),
		],
		run         = webhook,
	),
	BlockDefinition(
		type        = "streamDisplay",
		label       = "Output Display",
		description = "Show the value of an upstream output",
		category    = BlockCategory.DISPLAY,
		inputs      = [
			InputField(name=DISPLAY_DATA_INPUT, label="Data", allow_variable=True),
		],
		outputs     = [
			OutputField(name=DISPLAY_DATA_INPUT, label="Data"),
		],
		run         = stream_display,
	),
]


def default_registry(*extra: BlockDefinition) -> BlockRegistry:
	"""Registry holding the built-in blocks plus any `extra` definitions"""
	# Fresh limiter state per registry
	return BlockRegistry(BUILTIN_BLOCKS).with_blocks(rate_limit_block(), *extra)
