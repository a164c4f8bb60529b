"""
Health check configuration and status-code matching.
"""

from typing import List, Literal, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator


def parse_matcher(matcher: str) -> List[Tuple[int, int]]:
    """
    Parse a status-code matcher such as ``"200"``, ``"200,302"`` or ``"200-299"``.

    Returns:
        List of inclusive (low, high) ranges

    Raises:
        ValueError: Matcher is malformed
    """
    ranges = []
    for part in matcher.split(","):
        part = part.strip()
        if not part:
            raise ValueError(f"Invalid matcher: {matcher!r}")
        low, _, high = part.partition("-")
        try:
            low_code = int(low)
            high_code = int(high) if high else low_code
        except ValueError:
            raise ValueError(f"Invalid matcher: {matcher!r}") from None
        if not (100 <= low_code <= high_code <= 599):
            raise ValueError(f"Invalid matcher range: {part!r}")
        ranges.append((low_code, high_code))
    return ranges


def status_matches(matcher: str, status_code: int) -> bool:
    return any(low <= status_code <= high for low, high in parse_matcher(matcher))


class HealthCheckConfig(BaseModel):
    path: str = "/"
    protocol: Literal["HTTP", "HTTPS"] = "HTTP"
    matcher: str = "200"
    interval: float = Field(15, gt=0)
    timeout: float = Field(3, gt=0)
    healthy_threshold: int = Field(2, ge=1, le=10)
    unhealthy_threshold: int = Field(2, ge=1, le=10)
    port: str = "traffic-port"

    @field_validator("path")
    @classmethod
    def _path_is_absolute(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("health check path must start with '/'")
        return value

    @field_validator("matcher")
    @classmethod
    def _matcher_parses(cls, value: str) -> str:
        parse_matcher(value)
        return value

    @field_validator("port")
    @classmethod
    def _port_is_valid(cls, value: str) -> str:
        if value != "traffic-port" and not (value.isdigit() and 1 <= int(value) <= 65535):
            raise ValueError("port must be 'traffic-port' or 1-65535")
        return value

    @model_validator(mode="after")
    def _timeout_below_interval(self):
        if self.timeout >= self.interval:
            raise ValueError("timeout must be smaller than interval")
        return self

    def to_attributes(self) -> dict:
        """Target group ``health_check`` block."""
        return self.model_dump()
