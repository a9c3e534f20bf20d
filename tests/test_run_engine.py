import pytest

from conftest import fast_config
from scripts.run_engine import build_engine, run_engine


@pytest.mark.asyncio
async def test_demo_run_completes_every_batch(capsys):
    final, exported = await run_engine(build_engine(fast_config(max_concurrent_requests=3)))

    # three pages without an image plus one cover
    assert (final.total, final.completed, final.failed) == (4, 4, 0)
    assert final.closed_at is not None
    assert (exported.total, exported.completed) == (1, 1)
    assert "engine: stats" in capsys.readouterr().out
