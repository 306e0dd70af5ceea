"""Configuration management for rbridge."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .logging_utils import configure_logging

ByteOrder = Literal["big", "little"]
InterruptMode = Literal["auto", "signal", "escape"]


class Settings(BaseSettings):
    """Bridge session settings."""

    model_config = SettingsConfigDict(
        env_prefix="RBRIDGE_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Engine process
    executable: str = Field(default="R", description="Path or name of the R executable")
    launch_args: list[str] = Field(default_factory=lambda: ["--slave"], description="Extra engine flags")
    interactive: bool = Field(default=False, description="Run the engine on a pseudo-terminal in interactive mode")
    interrupt_mode: InterruptMode = Field(default="auto", description="How eval interruption reaches the engine")
    echo: bool = Field(default=True, description="Forward engine output of eval to the echo sink")

    # Binary channel
    hostname: str = Field(default="127.0.0.1", description="Host the data port listens on")
    port_number: int = Field(default=38442, description="Smallest candidate data port")
    port_width: int = Field(default=1000, description="Number of candidate ports above port_number")
    bind_retries: int = Field(default=50, description="Attempts on the single port when port_width is 1")
    persistent: bool = Field(default=True, description="Keep the data socket open between calls")
    byte_order: ByteOrder = Field(default="big", description="Byte order of the binary channel")
    max_length: int = Field(default=1 << 28, description="Largest vector or string length accepted on decode")

    # Deadlines
    read_timeout: float | None = Field(default=None, description="Seconds to wait for each engine output line")
    connect_timeout: float = Field(default=30.0, description="Seconds to wait for the engine to dial back")

    # Logging
    log_level: str = Field(default="WARNING", description="Log level")

    @field_validator("port_number")
    @classmethod
    def _check_port(cls, value: int) -> int:
        if not 1 <= value <= 65535:
            raise ValueError(f"port_number out of range: {value}")
        return value

    @field_validator("port_width", "bind_retries", "max_length")
    @classmethod
    def _check_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    def resolve_interrupt_mode(self) -> Literal["signal", "escape"]:
        """Pick the interrupt delivery for the configured executable."""
        if self.interrupt_mode != "auto":
            return self.interrupt_mode
        if self.executable.strip("\"'").lower().endswith("rterm.exe"):
            return "escape"
        return "signal"

    def engine_args(self) -> list[str]:
        """Command line flags passed to the engine executable."""
        args: list[str] = []
        if self.interactive:
            if self.resolve_interrupt_mode() == "escape":
                args.append("--ess")
            else:
                args.extend(["--no-readline", "--interactive"])
        args.extend(self.launch_args)
        return args


def get_settings(**overrides: Any) -> Settings:
    """Get bridge settings.

    Args:
        **overrides: Field values taking precedence over the environment

    Returns:
        Settings instance
    """
    settings = Settings(**overrides)

    configure_logging(settings.log_level)

    return settings
