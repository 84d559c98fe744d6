"""
Tests for logging and memory utilities
"""

import logging

import pytest

from fibereval.evaluation.overlap import OverlapReport, OverlapScore
from fibereval.utils.logger import FiberEvalLogger, ScoreLog, get_logger, log_decision
from fibereval.utils.memory_manager import MemoryManager


class TestScoreLog:
    """Test the plain-text score log"""

    def test_header_and_lines(self, tmp_path):
        path = tmp_path / "log.txt"
        with ScoreLog(path) as log:
            log.anchor(0.0123456, "anchor", 0.5)
            log.bundle_score(0.25, "A", 12, 3, 1.5)
            log.greedy_round(0.1, "B", 7)

        lines = path.read_text().splitlines()
        assert lines == [
            "V3",
            "RMS_DIFF: 0.012346 anchor RMSE: 0.5",
            "RMS_DIFF: 0.25 A 12 3 1.5",
            "RMSE: 0.1 B 7",
        ]

    def test_overlap_lines(self, tmp_path):
        path = tmp_path / "log.txt"
        best = OverlapScore(0.8, 0.1, 0, "cst")
        directional = OverlapScore(0.5, 0.9, 1, "af")
        with ScoreLog(path) as log:
            log.overlap(OverlapReport(best, directional, (best, directional)), ["cst", "af"])
            log.overlap(OverlapReport(), [])

        lines = path.read_text().splitlines()
        assert lines[1] == "Best_overlap: 0.8 0.1 cst"
        assert lines[2] == "Best_dir_overlap: 0.9 0.5 af"
        assert lines[3] == "No_overlap"

    def test_closed_log_rejects_writes(self, tmp_path):
        log = ScoreLog(tmp_path / "log.txt")
        assert log.closed
        with pytest.raises(RuntimeError):
            log.greedy_round(0.1, "B", 1)


class TestLogging:
    """Test logger setup and the decision log"""

    def test_file_logger(self, tmp_path):
        run_logger = FiberEvalLogger(name="fibereval.test_run", log_dir=tmp_path, console=False)
        run_logger.get_logger().info("hello")
        run_logger.close()

        assert run_logger.log_file is not None
        assert "hello" in run_logger.log_file.read_text()
        assert run_logger.get_logger().handlers == []

    def test_get_logger_namespace(self):
        assert get_logger("pipeline").name == "fibereval.pipeline"
        assert get_logger().name == "fibereval"
        assert get_logger("fibereval.fit").name == "fibereval.fit"

    def test_decision_log_appends(self, tmp_path):
        path = tmp_path / "decision_log.md"
        log_decision("D1", "tests", "first", "because", {'a': 1}, output_file=path)
        log_decision("D2", "tests", "second", "because", {'b': 2}, output_file=path)

        text = path.read_text()
        assert "[D1]" in text and "[D2]" in text
        assert "- a = 1" in text
        assert "### [D1] first" in text
        assert "- rationale: because" in text
        assert "Automated" not in text


class TestMemoryManager:
    """Test the fitting memory budget"""

    def test_estimate_grows_with_size(self):
        manager = MemoryManager(1.0)
        small = manager.estimate_system_bytes(100, 10, 200)
        large = manager.estimate_system_bytes(1000, 10, 2000)
        assert 0 < small < large

    def test_check_system(self, caplog):
        manager = MemoryManager(1e-6)
        with caplog.at_level(logging.WARNING, logger="fibereval.utils.memory_manager"):
            assert not manager.check_system(10**6, 10, 10**6)
        assert "Fitting problem needs" in caplog.text

        assert MemoryManager(10.0).check_system(10, 2, 10)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
