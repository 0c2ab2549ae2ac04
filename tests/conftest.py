import pytest


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def no_sleep(sleeps):
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return _sleep
