from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
	"""Request body read from camelCase JSON, addressed in snake_case."""

	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def iso(value):
	return value.isoformat() if value is not None else None
