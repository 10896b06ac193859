import asyncio

import pytest


@pytest.mark.asyncio
async def test_cancelled_callers_leave_no_results_behind(db):
    waiter = asyncio.create_task(db.execute("list_report_requests"))
    await asyncio.sleep(0)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    # Operations run in order, so the cancelled one has been handled by now
    assert await db.execute("count_report_requests") is not None
    assert db.results == {}
    assert db.events == {}


@pytest.mark.asyncio
async def test_unknown_operation_is_raised_to_the_caller(db):
    with pytest.raises(LookupError):
        await db.execute("drop_everything")
    assert db.results == {}
