"""
Tests for the memory monitor.
"""

from autoprint.memory_monitor import MemoryMonitor, MemorySample, sample_process_memory


class ScriptedSampler:
    def __init__(self, rss_values):
        self.rss_values = list(rss_values)
        self.index = 0

    def __call__(self):
        rss = self.rss_values[self.index]
        self.index += 1
        return MemorySample(timestamp=float(self.index), rss_mb=rss, vms_mb=rss * 2, system_percent=40.0)


def test_real_sample_is_positive():
    sample = sample_process_memory()
    assert sample.rss_mb > 0
    assert sample.vms_mb > 0


def test_high_rss_warning():
    monitor = MemoryMonitor(rss_warning_mb=400, sampler=ScriptedSampler([120, 450]))

    assert monitor.check().healthy is True
    result = monitor.check()
    assert result.healthy is False
    assert result.warnings == ["High RSS memory: 450MB / 400MB threshold"]


def test_leak_needs_full_monotonic_window():
    monitor = MemoryMonitor(history_size=4, leak_growth_mb=50,
                            sampler=ScriptedSampler([100, 120, 140, 160, 155, 170, 190, 210]))

    results = [monitor.check() for _ in range(8)]

    # Window full and growing by 60MB
    assert results[3].healthy is False
    assert "Possible memory leak" in results[3].warnings[0]
    # A single drop inside the window clears the suspicion
    assert all(r.healthy for r in results[4:7])
    # 155 -> 210 is monotonic again with 55MB growth
    assert results[7].healthy is False


def test_small_growth_is_not_a_leak():
    monitor = MemoryMonitor(history_size=3, leak_growth_mb=50, sampler=ScriptedSampler([100, 110, 120]))

    assert [monitor.check().healthy for _ in range(3)] == [True, True, True]


def test_stats_and_bounded_history():
    monitor = MemoryMonitor(history_size=3, sampler=ScriptedSampler([100, 200, 300, 400]))
    assert monitor.get_stats() == {'current': None, 'samples': 0}

    for _ in range(4):
        monitor.check()

    stats = monitor.get_stats()
    assert stats['samples'] == 3
    assert stats['rss_min_mb'] == 200
    assert stats['rss_max_mb'] == 400
    assert stats['rss_avg_mb'] == 300
    assert stats['current']['rss_mb'] == 400
    assert [s.rss_mb for s in monitor.history()] == [200, 300, 400]
