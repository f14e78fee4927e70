# blocks

from __future__ import annotations


import asyncio


from   pydantic import BaseModel, ConfigDict, Field
from   typing   import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union


from   .schema  import BlockCategory, InputField, OutputField


BlockOutputs    = Dict[str, str]
TriggerCallback = Callable[[BlockOutputs], None]
ErrorCallback   = Callable[[BaseException], None]
Unsubscribe     = Callable[[], None]
RunFunction     = Callable[[BlockOutputs, "RunContext"], Union[Awaitable[BlockOutputs], BlockOutputs]]
SubscribeFunction = Callable[[BlockOutputs, TriggerCallback, ErrorCallback], Unsubscribe]
OutputsFunction = Callable[[BlockOutputs], List[OutputField]]


class RunContext:
	"""
	Capabilities injected by the caller for one execution.
	Block implementations consume them opaquely; the engine never persists them.
	"""

	def __init__(self,
		wallet_address   : Optional[str]                        = None,
		send_transaction : Optional[Callable[..., Awaitable[str]]] = None,
		sign_typed_data  : Optional[Callable[..., Awaitable[str]]] = None,
		agent_id         : Optional[str]                        = None,
		node_id          : Optional[str]                        = None,
	):
		self.wallet_address   = wallet_address
		self.send_transaction = send_transaction
		self.sign_typed_data  = sign_typed_data
		self.agent_id         = agent_id
		self.node_id          = node_id   # set by the engine for the block being run

	def for_agent(self, agent_id: str) -> RunContext:
		return RunContext(
			wallet_address   = self.wallet_address,
			send_transaction = self.send_transaction,
			sign_typed_data  = self.sign_typed_data,
			agent_id         = agent_id,
		)

	def for_node(self, node_id: str) -> RunContext:
		return RunContext(
			wallet_address   = self.wallet_address,
			send_transaction = self.send_transaction,
			sign_typed_data  = self.sign_typed_data,
			agent_id         = self.agent_id,
			node_id          = node_id,
		)


class BlockDefinition(BaseModel):
	"""A typed unit of behaviour: declared fields plus `run` and an optional `subscribe`"""
	model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

	type        : str
	label       : str                           = ""
	description : str                           = ""
	category    : BlockCategory                 = BlockCategory.ACTION
	categories  : Optional[List[BlockCategory]] = None
	service     : Optional[str]                 = None
	inputs      : List[InputField]              = Field(default_factory=list)
	outputs     : List[OutputField]             = Field(default_factory=list)
	run         : RunFunction
	subscribe   : Optional[SubscribeFunction]   = None
	get_outputs : Optional[OutputsFunction]     = None

	@property
	def is_trigger(self) -> bool:
		return self.category == BlockCategory.TRIGGER

	@property
	def can_subscribe(self) -> bool:
		return self.subscribe is not None

	def in_category(self, category: BlockCategory) -> bool:
		if self.categories:
			return category in self.categories
		return self.category == category

	def get_input(self, name: str) -> Optional[InputField]:
		for field in self.inputs:
			if field.name == name:
				return field
		return None

	def outputs_for(self, inputs: Optional[Dict[str, Any]] = None) -> List[OutputField]:
		"""Outputs for the given node inputs (dynamic when `get_outputs` is set)"""
		if self.get_outputs is None:
			return list(self.outputs)
		values = {key: "" if value is None else str(value) for key, value in (inputs or {}).items()}
		return list(self.get_outputs(values))

	async def invoke(self, inputs: BlockOutputs, context: RunContext) -> Any:
		result = self.run(inputs, context)
		if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
			result = await result
		return result


class BlockRegistry:
	"""
	Immutable lookup table from block type to definition.
	Built once at startup and passed by reference into the normalizer and engine.
	"""

	def __init__(self, definitions: Iterable[BlockDefinition] = ()):
		blocks: Dict[str, BlockDefinition] = {}
		for definition in definitions:
			blocks[definition.type] = definition
		self._blocks = blocks

	def __contains__(self, block_type: object) -> bool:
		return block_type in self._blocks

	def __len__(self) -> int:
		return len(self._blocks)

	def get(self, block_type: Optional[str]) -> Optional[BlockDefinition]:
		if not block_type:
			return None
		return self._blocks.get(block_type)

	def all(self) -> List[BlockDefinition]:
		return list(self._blocks.values())

	def types(self) -> List[str]:
		return list(self._blocks.keys())

	def with_blocks(self, *definitions: BlockDefinition) -> BlockRegistry:
		"""New registry with extra definitions; same-type definitions are replaced"""
		return BlockRegistry([*self._blocks.values(), *definitions])

	def by_category(self, category: BlockCategory) -> List[BlockDefinition]:
		return [block for block in self._blocks.values() if block.in_category(category)]

	def grouped_by_service(self, category: BlockCategory) -> Dict[str, List[BlockDefinition]]:
		"""Blocks of a category keyed by service; blocks without one go under 'general'"""
		groups: Dict[str, List[BlockDefinition]] = {}
		for block in self.by_category(category):
			groups.setdefault(block.service or "general", []).append(block)
		return groups

	def outputs_for(self, block_type: Optional[str], inputs: Optional[Dict[str, Any]] = None) -> List[OutputField]:
		block = self.get(block_type)
		if block is None:
			return []
		return block.outputs_for(inputs)

	def all_output_options(self) -> List[Dict[str, Any]]:
		options = []
		for block in self._blocks.values():
			for output in block.outputs:
				options.append({
					"block_type"  : block.type,
					"block_label" : block.label,
					"output"      : output,
				})
		return options

	def is_trigger(self, block_type: Optional[str]) -> bool:
		block = self.get(block_type)
		return block is not None and block.is_trigger

	def describe(self) -> List[Dict[str, Any]]:
		"""Serializable catalogue of the registered blocks (callables omitted)"""
		return [
			{
				"type"          : block.type,
				"label"         : block.label,
				"description"   : block.description,
				"category"      : block.category.value,
				"categories"    : [c.value for c in block.categories] if block.categories else None,
				"service"       : block.service,
				"can_subscribe" : block.can_subscribe,
				"inputs"        : [field.model_dump(by_alias=True, exclude_none=True) for field in block.inputs],
				"outputs"       : [field.model_dump(by_alias=True, exclude_none=True) for field in block.outputs],
			}
			for block in self._blocks.values()
		]
