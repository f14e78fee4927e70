# variables
#
# A field value either *is* a reference ("{{nodeId.outputName}}") or a literal.
# Partial embedding inside a larger string is never interpolated.

import re


from   typing   import Dict, Mapping, NamedTuple, Optional


OutputCache = Dict[str, Dict[str, str]]


_REFERENCE_PATTERN = re.compile(r"\{\{([^{}\n]+)\}\}")


class VariableRef(NamedTuple):
	node_id     : Optional[str]   # None for bare (legacy/local) names
	output_name : str

	def __str__(self) -> str:
		if self.node_id is None:
			return "{{" + self.output_name + "}}"
		return "{{" + f"{self.node_id}.{self.output_name}" + "}}"


def parse_variable_ref(value: Optional[str]) -> Optional[VariableRef]:
	if not isinstance(value, str):
		return None
	match = _REFERENCE_PATTERN.fullmatch(value)
	if not match:
		return None
	token = match.group(1).strip()
	if not token:
		return None
	node_id, dot, output_name = token.partition(".")
	if not dot:
		return VariableRef(None, token)
	if not node_id or not output_name:
		return None
	return VariableRef(node_id, output_name)


def make_variable_ref(node_id: str, output_name: str) -> str:
	return str(VariableRef(node_id, output_name))


def resolve_variables(value: str, output_cache: Mapping[str, Mapping[str, str]]) -> str:
	"""Resolve a full-string reference against the run's output cache; misses keep the literal"""
	ref = parse_variable_ref(value)
	if ref is None or ref.node_id is None:
		return value
	node_outputs = output_cache.get(ref.node_id)
	if not node_outputs:
		return value
	resolved = node_outputs.get(ref.output_name)
	if resolved is None:
		return value
	return resolved


def is_unresolved(value: Optional[str]) -> bool:
	"""True when a value is still an explicit cross-node reference"""
	ref = parse_variable_ref(value)
	return ref is not None and ref.node_id is not None
