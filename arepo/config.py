"""Settings base shared by every arepo component.

Settings are plain pydantic-settings models. Each component accepts an
explicit settings instance; when none is given it builds one from the
environment using the class' ``env_prefix``. Nothing is looked up from a
global container.
"""

import rich.repr
from pydantic_settings import BaseSettings, SettingsConfigDict


@rich.repr.auto
class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="AREPO_",
        env_nested_delimiter="__",
        extra="ignore",
        arbitrary_types_allowed=True,
        validate_default=True,
        protected_namespaces=("model_", "settings_"),
    )

    def __rich_repr__(self) -> rich.repr.Result:
        for name, field in type(self).model_fields.items():
            yield name, getattr(self, name), field.default
