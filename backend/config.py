from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class PhaseDurations(BaseModel):
    """Countdown length of each timed phase, in timer ticks."""
    night: int = 15
    resolution: int = 5
    task: int = 30
    voting: int = 10


class Settings(BaseSettings):
    # Phase durations (ticks). Override with NIGHT_SECONDS, TASK_SECONDS, ...
    night_seconds: int = 15
    resolution_seconds: int = 5
    task_seconds: int = 30
    voting_seconds: int = 10
    # Grace period after the first ready signal before the first night force-starts
    ready_grace_seconds: int = 5
    # Start the first night anyway if nobody signals ready within this many ticks
    ready_timeout_seconds: int = 30
    # Ticks the memory task's items stay visible before only the shuffled choices remain
    memory_display_seconds: int = 5
    # Wall-clock length of one timer tick
    tick_seconds: float = 1.0

    default_min_participants: int = 4
    default_max_participants: int = 10
    default_stake: str = "10000000000000000"
    room_code_length: int = 6

    # Ended sessions stay readable (history, commitment) for this long before the reaper drops them
    session_retention_seconds: int = 600
    # Seconds between reaper passes; 0 disables the background reaper
    reap_interval_seconds: int = 60

    # CORS origins. Set ALLOWED_ORIGINS env var for production (JSON list)
    allowed_origins: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]
    debug: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
    )

    @property
    def phase_durations(self) -> PhaseDurations:
        return PhaseDurations(
            night=self.night_seconds,
            resolution=self.resolution_seconds,
            task=self.task_seconds,
            voting=self.voting_seconds,
        )


settings = Settings()
