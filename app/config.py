from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    HOST: str = "0.0.0.0"
    PORT: int = 3000
    LOG_LEVEL: str = "INFO"
    DB_PATH: str = "/data/zeroshift.db"

    DOCKER_BIN: str = "docker"
    DOCKER_NETWORK: str = "zeroshift-net"
    BASE_APP_PORT: int = 3100
    CONTAINER_PREFIX: str = "zeroshift"
    DEFAULT_CONTAINER_PORT: int = 80
    CONTAINER_HOST: str = "localhost"
    COMMAND_TIMEOUT_SECONDS: int = 30
    PULL_TIMEOUT_SECONDS: int = 600

    NGINX_CONF_DIR: str = "/etc/nginx/conf.d/zeroshift"
    NGINX_UPSTREAM_HOST: str = "127.0.0.1"
    NGINX_TEST_CMD: str = "nginx -t"
    NGINX_RELOAD_CMD: str = "nginx -s reload"

    HEALTH_TIMEOUT_SECONDS: float = 5.0
    HEALTH_MAX_RETRIES: int = 10
    HEALTH_RETRY_DELAY_SECONDS: float = 3.0
    HEALTH_MAX_LATENCY_MS: float = 2000.0

    RETAINED_STANDBY_CONTAINERS: int = 1
    RECONCILE_ON_STARTUP: bool = True

    class Config:
        env_prefix = ""
        env_file = ".env"


settings = Settings()
