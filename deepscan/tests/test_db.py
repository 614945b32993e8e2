from __future__ import annotations

import pytest
from sqlalchemy import text

from deepscan.db import create_db_engine, server_connect_args, session_generator


class TestServerTimeouts:
    def test_postgresql_bounds_statements_and_locks(self):
        args = server_connect_args("postgresql+psycopg2://scout:pw@db/deepscan", 2.5)
        assert args["connect_timeout"] == 3
        assert "statement_timeout=2500" in args["options"]
        assert "lock_timeout=2500" in args["options"]

    def test_mysql_bounds_reads_and_writes(self):
        args = server_connect_args("mysql+pymysql://scout:pw@db/deepscan", 10)
        assert args == {"connect_timeout": 10, "read_timeout": 10, "write_timeout": 10}

    def test_unknown_backend_gets_no_driver_args(self):
        assert server_connect_args("oracle://scout:pw@db/deepscan", 10) == {}

    @pytest.mark.parametrize("timeout", [0.1, 0.5])
    def test_sub_second_timeouts_round_up(self, timeout):
        assert server_connect_args("postgresql://db/deepscan", timeout)["connect_timeout"] == 1


class TestSqliteEngine:
    def test_busy_timeout_applied(self, tmp_path):
        engine = create_db_engine(f"sqlite:///{tmp_path / 'x.db'}", timeout=7)
        try:
            with engine.connect() as conn:
                assert conn.execute(text("PRAGMA busy_timeout")).scalar() == 7000
        finally:
            engine.dispose()


class TestSessionGenerator:
    def test_closes_session(self, monkeypatch):
        closed = []

        class FakeSession:
            def rollback(self):
                closed.append("rollback")

            def close(self):
                closed.append("close")

        monkeypatch.setattr("deepscan.db.get_session", FakeSession)
        gen = session_generator()
        next(gen)
        with pytest.raises(RuntimeError):
            gen.throw(RuntimeError("request failed"))
        assert closed == ["rollback", "close"]
