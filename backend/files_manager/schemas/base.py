"""camelCase JSON on the wire, snake_case everywhere in Python."""
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Bodies accept either spelling and serialize as camelCase."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CamelORMModel(CamelModel):
    """Response bodies read straight off ORM rows."""
    model_config = ConfigDict(from_attributes=True)
