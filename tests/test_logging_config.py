import json

from loguru import logger

from chat_context_engine.logging_config import setup_logging
from tests.storage.base import TempDirTestCase


class SetupLoggingTests(TempDirTestCase):
    def tearDown(self) -> None:
        logger.remove()
        super().tearDown()

    def test_registers_configured_consumers_and_skips_unknown(self) -> None:
        log_path = str(self._tmp_dir / "logs" / "engine.log")

        descriptions = setup_logging(
            "DEBUG",
            [
                {"type": "file", "path": log_path},
                {"type": "carrier-pigeon"},
                {"type": "console", "level": "WARNING"},
            ],
        )

        self.assertEqual([f"file ({log_path}, DEBUG)", "console (stderr, WARNING)"], descriptions)

    def test_tenant_is_attached_to_records(self) -> None:
        log_path = self._tmp_dir / "engine.log"
        jsonl_path = self._tmp_dir / "engine.jsonl"
        setup_logging(
            "INFO",
            [{"type": "file", "path": str(log_path)}, {"type": "jsonl", "path": str(jsonl_path)}],
            tenant_id="acme",
        )

        logger.info("saved session s1")
        logger.bind(tenant="globex").info("saved session s2")
        logger.remove()

        lines = log_path.read_text(encoding="utf-8").splitlines()
        self.assertIn("| acme | ", lines[0])
        self.assertIn("| globex | ", lines[1])
        record = json.loads(jsonl_path.read_text(encoding="utf-8").splitlines()[0])["record"]
        self.assertEqual("acme", record["extra"]["tenant"])
        self.assertEqual("saved session s1", record["message"])
