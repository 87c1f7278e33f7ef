from pydantic import BaseModel


class ProcessMetrics(BaseModel):
    running: bool
    cpu_percent: float = 0.0
    memory_percent: float = 0.0
    memory_used_mb: int = 0
    memory_allocated_mb: int
    memory_usage_percent: int = 0
    uptime_seconds: int = 0
    active_players: int = 0
    max_players: int


class HostMetrics(BaseModel):
    cpu_usage: float
    memory_used_mb: int
    memory_total_mb: int
    memory_usage_percent: int
    disk_used_gb: float
    disk_total_gb: float
    disk_usage_percent: float
    uptime_seconds: int
    load_average_1m: float
    load_average_5m: float
    load_average_15m: float
