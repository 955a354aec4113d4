# tests/test_logs.py
from __future__ import annotations

import logging

import pytest

from triggerci.config import Settings
from triggerci.logs import SecretMasker, SecretMaskingFilter, configure_logging
from triggerci.ui.console import Console


class TestSecretMasker:
    def test_masks_every_occurrence(self):
        masker = SecretMasker(["hunter2"])
        assert masker.mask("pw=hunter2 again hunter2") == "pw=*** again ***"

    def test_longest_value_wins(self):
        masker = SecretMasker(["abc", "abcdef"])
        assert masker.mask("token abcdef") == "token ***"

    def test_short_and_empty_values_are_ignored(self):
        masker = SecretMasker(["", "ab"])
        assert masker.mask("ab cd") == "ab cd"

    def test_filter_rewrites_log_records(self):
        record = logging.LogRecord("triggerci.test", logging.INFO, __file__, 1, "token is %s", ("sekret-1",), None)
        SecretMaskingFilter(SecretMasker(["sekret-1"])).filter(record)
        assert record.getMessage() == "token is ***"

    def test_configure_logging_installs_one_masking_handler(self):
        configure_logging("info", secrets=["configured-secret"])
        configure_logging("debug")
        logger = logging.getLogger("triggerci")
        assert len(logger.handlers) == 1
        assert logger.level == logging.DEBUG
        assert any(isinstance(f, SecretMaskingFilter) for f in logger.handlers[0].filters)


class TestConsole:
    def test_output_is_masked(self, capsys):
        console = Console(masker=SecretMasker(["p4ssword"]))
        console.print_info("using p4ssword")
        console.print_error("Boom", "p4ssword leaked")
        out, err = capsys.readouterr()
        assert "p4ssword" not in out + err
        assert "using ***" in out
        assert "*** leaked" in err

    def test_debug_only_output(self, capsys):
        Console(debug=False).print_debug("hidden")
        Console(debug=True).print_debug("shown")
        _, err = capsys.readouterr()
        assert "hidden" not in err
        assert "[DEBUG] shown" in err


class TestSettings:
    def test_defaults(self):
        settings = Settings.from_env({})
        assert settings.max_parallel is None
        assert settings.artifacts_dir == ".triggerci/artifacts"
        assert "self-hosted" in settings.runner_labels
        assert settings.log_level == "WARNING"

    def test_from_environment(self):
        settings = Settings.from_env(
            {
                "TRIGGERCI_MAX_PARALLEL": "3",
                "TRIGGERCI_ARTIFACTS_DIR": "/tmp/arts",
                "TRIGGERCI_RUNNER_LABELS": "gpu, linux,",
                "TRIGGERCI_LOG_LEVEL": "debug",
            }
        )
        assert settings.max_parallel == 3
        assert settings.artifacts_dir == "/tmp/arts"
        assert settings.runner_labels == frozenset({"gpu", "linux"})
        assert settings.log_level == "DEBUG"

    def test_bad_parallelism(self):
        with pytest.raises(ValueError):
            Settings.from_env({"TRIGGERCI_MAX_PARALLEL": "many"})
