"""
Unit tests for the SQLite database wrapper.
"""

import pytest

from tasker.registry.storage import ProcessMetricSample
from tasker.utils.errors import DatabaseError, DatabaseIntegrityError

from tests.fixtures import RegistryFixtures


class TestSQLiteDatabase:
    """Test statement execution and transactions."""

    async def test_duplicate_key_is_integrity_error(self, storage, task_id):
        run = await RegistryFixtures.create_run(storage, task_id)

        with pytest.raises(DatabaseIntegrityError) as exc_info:
            await RegistryFixtures.create_run(storage, task_id, run_id=run.run_id)

        assert exc_info.value.code == "DB_INTEGRITY_ERROR"
        assert isinstance(exc_info.value, DatabaseError)

    async def test_metric_for_unknown_run_is_rejected(self, storage, clock):
        with pytest.raises(DatabaseIntegrityError):
            await storage.insert_metric_sample(ProcessMetricSample(
                run_id="no-such-run",
                timestamp=clock.now,
                process_id=4242,
                hostname="worker-1",
                **RegistryFixtures.metric_fields()
            ))

    async def test_transaction_rolls_back_on_error(self, storage, task_id):
        run = await RegistryFixtures.create_run(storage, task_id)

        with pytest.raises(RuntimeError):
            async with storage.db.transaction() as tx:
                await tx.execute(
                    "UPDATE task_runs SET error_message = ? WHERE run_id = ?",
                    ("partial", run.run_id)
                )
                raise RuntimeError("abort")

        assert (await storage.get_task_run(run.run_id)).error_message is None

    async def test_syntax_error_is_database_error(self, storage):
        with pytest.raises(DatabaseError) as exc_info:
            await storage.db.execute("UPDATE missing_table SET x = 1")

        assert not isinstance(exc_info.value, DatabaseIntegrityError)
