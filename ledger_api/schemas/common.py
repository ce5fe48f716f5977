"""
Shared schema base.

The payments API speaks camelCase JSON (senderAccountId, newBalance, ...).
CamelModel maps snake_case attributes to camelCase aliases; responses are
serialized by alias and requests accept either spelling.
"""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )
