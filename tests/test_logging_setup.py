"""Tests for per-experiment log files."""

import pytest

from nvdrs_ipv.logging_setup import (
    close_experiment_logger,
    init_experiment_logger,
    read_experiment_log,
)


class TestExperimentLogger:
    """Test log routing to experiment.log, errors.log and api_calls.log."""

    @pytest.fixture
    def exp_logger(self, tmp_path):
        log = init_experiment_logger("exp-log", tmp_path)
        yield log
        close_experiment_logger(log)

    def test_routing(self, exp_logger, tmp_path):
        """Test each level and the api child land in the right files."""
        exp_logger.info("started run")
        exp_logger.warning("confidence_out_of_range:1.5")
        exp_logger.getChild("api").info("1001/cme attempts=1")
        close_experiment_logger(exp_logger)

        main = "\n".join(read_experiment_log("exp-log", tmp_path))
        errors = "\n".join(read_experiment_log("exp-log", tmp_path, "errors"))
        api = "\n".join(read_experiment_log("exp-log", tmp_path, "api"))

        assert "started run" in main and "confidence_out_of_range" in main
        assert "confidence_out_of_range" in errors and "started run" not in errors
        assert "1001/cme" in api and "1001/cme" not in main

    def test_reinit_does_not_duplicate(self, exp_logger, tmp_path):
        """Test initialising twice keeps one handler per file."""
        again = init_experiment_logger("exp-log", tmp_path)

        assert again is exp_logger
        assert len(again.handlers) == 2
        assert len(again.getChild("api").handlers) == 1

    def test_close_detaches_handlers(self, exp_logger):
        """Test closing removes every handler."""
        close_experiment_logger(exp_logger)

        assert exp_logger.handlers == []
        assert exp_logger.getChild("api").handlers == []

    def test_read_invalid_type(self, exp_logger, tmp_path):
        """Test an unknown log type is refused."""
        with pytest.raises(ValueError):
            read_experiment_log("exp-log", tmp_path, "debug")

    def test_read_missing(self, tmp_path):
        """Test reading logs of an unknown experiment raises."""
        with pytest.raises(FileNotFoundError):
            read_experiment_log("nope", tmp_path)
