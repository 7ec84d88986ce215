from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError


class Config(BaseModel):
    """Configuration data for connecting the admin console to its backends."""

    name: str = Field("event-console", description="Name shown in console output.")
    database_url: str = Field(..., description="Base URL of the realtime store.")
    api_url: str = Field("", description="Backend API endpoint for POST actions.")
    auth_token: str | None = Field(
        None, description="Credential appended to store reads, if required."
    )
    id_token: str | None = Field(
        None, description="Identity token sent with backend API requests."
    )
    cancel_label: str = Field(
        "キャンセル", description="Group label that collects absent leaders."
    )
    staff_group_key: str = Field(
        "__gl_staff__", description="Raw group key that collects staff leaders."
    )
    staff_label: str = Field(
        "運営待機", description="Group label that collects staff leaders."
    )
    absent_label: str = Field("欠席", description="Meta label for absent leaders.")
    token_snapshot_ttl: float = Field(
        10.0, description="Seconds a token snapshot stays fresh."
    )
    request_timeout: float = Field(30.0, description="HTTP timeout in seconds.")
    log_level: str = Field("WARNING", description="Logging level for the CLI.")
    focus_targets: list[str] = Field(
        default_factory=lambda: ["participants", "schedules", "events"],
        description="Accepted values for the deep-link focus hint.",
    )

    def normalized_base_url(self) -> str:
        """Return `database_url` without a trailing slash."""
        return self.database_url.rstrip("/")


def load_config(path: Path) -> Config:
    """Load and validate a YAML configuration file.

    Args:
        path: Path to the configuration file.

    Returns:
        Config: The validated configuration.

    Raises:
        FileNotFoundError: If `path` does not exist.
        ValueError: If the file content does not validate.
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"config file does not exist: {path}")
    with open(path, "r", encoding="utf-8") as file:
        data = yaml.safe_load(file) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping")
    try:
        return Config(**data)
    except ValidationError as exc:
        raise ValueError(f"invalid config in {path}: {exc}") from exc
