from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    json_logs: bool = False

    # Definitions
    definitions_dir: str = "./pipelines"

    # Artifacts
    artifacts_dir: str = "./artifacts"
    capture_logs: bool = True  # store each command's output as a run artifact
    max_output_bytes: int = 10 * 1024 * 1024

    # Execution
    default_command_timeout: float | None = None  # seconds, None = no limit
    allowed_failure_outcome: str = "unstable"  # or "success"

    # API
    max_retained_runs: int = 100  # finished runs kept in memory for inspection

    model_config = {
        "env_prefix": "STAGEFLOW_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


settings = Settings()
