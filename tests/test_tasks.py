"""Tests for tasks.py"""

from readsync.core.tasks import EngineState, TaskQueue


class TestTaskQueue:
    def test_tick_runs_one_task(self):
        ran = []
        q = TaskQueue()
        q.schedule("a", lambda: ran.append("a"))
        q.schedule("b", lambda: ran.append("b"))

        assert q.tick()
        assert ran == ["a"]
        assert q.pending == 1
        assert q.names() == ["b"]

    def test_tick_on_empty_queue(self):
        assert TaskQueue().tick() is False

    def test_run_until_idle_includes_rescheduled_work(self):
        q = TaskQueue()
        seen = []

        def step(i):
            seen.append(i)
            if i < 4:
                q.schedule(f"step{i + 1}", lambda: step(i + 1))

        q.schedule("step0", lambda: step(0))
        assert q.run_until_idle() == 5
        assert seen == [0, 1, 2, 3, 4]
        assert q.pending == 0

    def test_run_until_idle_respects_limit(self):
        q = TaskQueue()

        def forever():
            q.schedule("again", forever)

        q.schedule("start", forever)
        assert q.run_until_idle(max_ticks=3) == 3
        assert q.pending == 1


class TestEngineState:
    def test_values(self):
        assert [s.value for s in EngineState] == ["idle", "scanning", "matching", "syncing"]
