# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Unit tests for settings, secrets, trigger events and logging setup.
"""
import json
import logging

import pytest

from stackship.PIPELINE.trigger import TriggerEvent
from stackship.settings import Settings, load_secrets
from stackship.UTILS.logging_setup import JsonFormatter, setup_logging


class TestSettings:
    def test_defaults(self):
        settings = Settings.from_env({})
        assert settings.deploy_host == "local"
        assert settings.stage_timeout is None
        assert settings.remote_pre_commands == []

    def test_from_env(self):
        settings = Settings.from_env({
            "STACKSHIP_REPO_URL": "https://git.example/shop.git",
            "STACKSHIP_DEPLOY_PORT": "2222",
            "STACKSHIP_STAGE_TIMEOUT": "900",
            "STACKSHIP_REMOTE_PRE_COMMANDS": "cd /srv/shop ;; git pull ;;",
            "STACKSHIP_LOG_LEVEL": "debug",
            "UNRELATED": "x",
        })
        assert settings.repo_url == "https://git.example/shop.git"
        assert settings.deploy_port == 2222
        assert settings.stage_timeout == 900.0
        assert settings.remote_pre_commands == ["cd /srv/shop", "git pull"]
        assert settings.log_level == "DEBUG"

    def test_zero_timeout_disables_it(self):
        assert Settings.from_env({"STACKSHIP_STAGE_TIMEOUT": "0"}).stage_timeout is None

    def test_env_file_does_not_override_environment(self, tmp_path, monkeypatch):
        env_file = tmp_path / ".env"
        env_file.write_text("STACKSHIP_REGISTRY=registry.from-file\nSTACKSHIP_DEPLOY_USER=file-user\n")
        monkeypatch.setenv("STACKSHIP_DEPLOY_USER", "env-user")
        monkeypatch.delenv("STACKSHIP_REGISTRY", raising=False)

        settings = Settings.load(str(env_file))

        monkeypatch.delenv("STACKSHIP_REGISTRY", raising=False)
        assert settings.registry == "registry.from-file"
        assert settings.deploy_user == "env-user"

    def test_secrets_are_kept_apart(self):
        environ = {"STACKSHIP_SSH_KEY": "/keys/id", "STACKSHIP_REGISTRY_PASSWORD": "hunter2",
                   "STACKSHIP_REGISTRY_USERNAME": ""}
        assert load_secrets(environ) == {"SSH_KEY": "/keys/id", "REGISTRY_PASSWORD": "hunter2"}
        assert "hunter2" not in Settings.from_env(environ).model_dump_json()


class TestTriggerEvent:
    def test_push_prefers_commit(self):
        event = TriggerEvent.from_push_payload({"ref": "refs/heads/main", "after": "9f8e7d"}, target="prod")
        assert event.ref == "9f8e7d"
        assert event.target == "prod"
        assert event.source == "push"

    def test_push_without_commit_uses_ref(self):
        assert TriggerEvent.from_push_payload({"ref": "refs/heads/main"}).ref == "refs/heads/main"

    def test_branch_deletion_is_rejected(self):
        with pytest.raises(ValueError):
            TriggerEvent.from_push_payload({"ref": "refs/heads/old", "after": "0" * 40})

    def test_empty_payload_is_rejected(self):
        with pytest.raises(ValueError):
            TriggerEvent.from_push_payload({})


class TestLogging:
    def test_unknown_level(self):
        with pytest.raises(ValueError):
            setup_logging("chatty")

    def test_level_applies_to_package_logger(self):
        setup_logging("warning")
        logger = logging.getLogger("stackship")
        assert logger.level == logging.WARNING
        assert not logger.propagate

    def test_json_formatter(self):
        record = logging.LogRecord("stackship.x", logging.INFO, __file__, 1, "Service %s created", ("api",), None)
        entry = json.loads(JsonFormatter().format(record))
        assert entry["message"] == "Service api created"
        assert entry["level"] == "INFO"
        assert entry["logger"] == "stackship.x"
