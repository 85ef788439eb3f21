import redis

DEFAULT_REDIS_HOST = "127.0.0.1"
DEFAULT_REDIS_PORT = 6379


def get_redis_client(host: str = DEFAULT_REDIS_HOST, port: int = DEFAULT_REDIS_PORT) -> redis.Redis:
    return redis.Redis(
        host=host,
        port=port,
        decode_responses=True,
        socket_timeout=2.0,
        socket_connect_timeout=2.0,
    )
