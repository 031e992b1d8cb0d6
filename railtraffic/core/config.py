"""
Core configuration settings for the rail traffic scheduling and estimation engine.
"""
from pydantic_settings import BaseSettings
from pydantic import ConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database settings (run history only)
    database_url: str = "sqlite:///./railtraffic.db"

    # API settings
    api_v1_prefix: str = "/api"
    project_name: str = "Rail Traffic Optimization Engine"
    version: str = "0.1.0"

    # Rolling horizon
    rolling_horizon_minutes: int = 240
    update_interval_minutes: int = 10

    # Genetic search
    population_size: int = 50
    generations: int = 100
    mutation_rate: float = 0.1
    crossover_rate: float = 0.8
    elite_fraction: float = 0.2
    tournament_size: int = 3
    convergence_patience: int = 10
    convergence_tolerance: float = 1e-6
    conflict_penalty: float = 1000.0
    halt_probability: float = 0.3
    max_mutation_shift_minutes: int = 20
    max_departure_offset_minutes: int = 60
    optimization_timeout_seconds: int = 30

    # Constraint repair
    repair_max_iterations: int = 500
    repair_solver_time_limit_seconds: float = 5.0
    use_cp_sat_repair: bool = True
    headway_minutes: int = 5
    platform_buffer_minutes: int = 2
    token_system_enabled: bool = True

    # Evaluation
    on_time_threshold_minutes: int = 5

    # Conflict detection
    detection_interval_seconds: float = 5.0
    convergence_margin_minutes: float = 5.0
    stationary_speed_threshold: float = 5.0
    occupancy_bucket_minutes: int = 10
    max_platform_occupancy: int = 2
    safety_distance_km: float = 2.0
    station_radius_km: float = 1.0
    priority_resequencing_enabled: bool = True

    # Telemetry
    reading_window_seconds: int = 300
    channel_max_size: int = 1000
    broadcast_interval_seconds: float = 0.5

    # What-if analysis
    scenario_timeout_seconds: float = 30.0

    debug: bool = False
    log_level: str = "INFO"

    model_config = ConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    def constraint_parameters(self) -> dict:
        """Active constraint parameters exposed by the status query."""
        return {
            "safety_distance_km": self.safety_distance_km,
            "max_platform_occupancy": self.max_platform_occupancy,
            "convergence_margin_minutes": self.convergence_margin_minutes,
            "headway_minutes": self.headway_minutes,
            "platform_buffer_minutes": self.platform_buffer_minutes,
            "token_system_enabled": self.token_system_enabled,
            "priority_resequencing_enabled": self.priority_resequencing_enabled,
        }


settings = Settings()
