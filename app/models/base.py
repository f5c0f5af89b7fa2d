from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Snake-case attributes, camelCase JSON (the history export format)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
