from dataclasses import dataclass


DEFAULT_USER_AGENT = "streamfetch/1.0 (+https://example.com; contact: fetch@example.com)"

DEFAULT_BUFFER_SIZE = 1024 * 1024
DEFAULT_CHUNK_SIZE = 16 * 1024


def get_user_agent() -> str:
    return DEFAULT_USER_AGENT


@dataclass(frozen=True)
class FetchConfig:
    connect_timeout: float = 30.0
    read_timeout: float = 60.0
    # Both bound how long a cancellation takes to be observed by the worker.
    write_timeout: float = 0.1
    wait_timeout: float = 0.1
    join_timeout: float = 5.0
    user_agent: str = DEFAULT_USER_AGENT
    max_redirects: int = 10
    buffer_size: int = DEFAULT_BUFFER_SIZE
    chunk_size: int = DEFAULT_CHUNK_SIZE
