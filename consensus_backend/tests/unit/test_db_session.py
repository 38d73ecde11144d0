import pytest

from consensus_backend.db_session import to_async_url


@pytest.mark.parametrize(
    "url, expected",
    [
        ("postgresql://u:p@db/consensus", "postgresql+asyncpg://u:p@db/consensus"),
        ("postgres://u:p@db/consensus", "postgresql+asyncpg://u:p@db/consensus"),
        ("sqlite:///./consensus.db", "sqlite+aiosqlite:///./consensus.db"),
        ("sqlite+aiosqlite:///:memory:", "sqlite+aiosqlite:///:memory:"),
        ("postgresql+asyncpg://db/consensus", "postgresql+asyncpg://db/consensus"),
    ],
)
def test_to_async_url(url, expected):
    assert to_async_url(url) == expected
