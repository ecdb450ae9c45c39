import unittest

from chat_context_engine.errors import StorageErrorCode, StorageQuotaExceeded
from chat_context_engine.storage import InMemoryRepository, SqliteRepository, TenantScope
from chat_context_engine.storage.repository import entry_size
from tests.storage.base import TempDirTestCase


class InMemoryRepositoryTests(unittest.TestCase):
    def test_set_get_delete_and_prefix_listing(self) -> None:
        repo = InMemoryRepository()
        repo.set("a:1", "one")
        repo.set("a:2", "two")
        repo.set("b:1", "three")

        self.assertEqual("one", repo.get("a:1"))
        self.assertEqual(["a:1", "a:2"], repo.list_keys("a:"))

        repo.delete("a:1")
        repo.delete("missing")
        self.assertIsNone(repo.get("a:1"))

    def test_capacity_is_enforced_in_bytes(self) -> None:
        repo = InMemoryRepository(capacity_bytes=20)
        repo.set("k", "é" * 5)
        self.assertEqual(entry_size("k", "é" * 5), repo.total_bytes())
        self.assertEqual(11, repo.total_bytes())

        with self.assertRaises(StorageQuotaExceeded) as ctx:
            repo.set("other", "x" * 20)
        self.assertEqual(StorageErrorCode.QUOTA_EXCEEDED, ctx.exception.code)

        # Replacing a value only counts the difference.
        repo.set("k", "x" * 19)
        self.assertEqual(20, repo.total_bytes())

    def test_transaction_rolls_back_on_error(self) -> None:
        repo = InMemoryRepository()
        repo.set("keep", "v1")
        with self.assertRaises(RuntimeError):
            with repo.transaction():
                repo.set("keep", "v2")
                repo.set("new", "x")
                with repo.transaction():
                    repo.delete("keep")
                raise RuntimeError("abort")

        self.assertEqual("v1", repo.get("keep"))
        self.assertIsNone(repo.get("new"))


class SqliteRepositoryTests(TempDirTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._repo = SqliteRepository(str(self._tmp_dir / "kv.db"))

    def tearDown(self) -> None:
        self._repo.close()
        super().tearDown()

    def test_values_survive_reopen(self) -> None:
        self._repo.set("x:1", "hello")
        self._repo.set("x:1", "updated")
        self._repo.close()

        self._repo = SqliteRepository(str(self._tmp_dir / "kv.db"))
        self.assertEqual("updated", self._repo.get("x:1"))
        self.assertEqual(["x:1"], self._repo.list_keys("x:"))

    def test_prefix_listing_treats_wildcards_literally(self) -> None:
        self._repo.set("a%b", "1")
        self._repo.set("axb", "2")
        self.assertEqual(["a%b"], self._repo.list_keys("a%"))

    def test_transaction_rolls_back_on_error(self) -> None:
        self._repo.set("keep", "v1")
        with self.assertRaises(RuntimeError):
            with self._repo.transaction():
                self._repo.set("keep", "v2")
                self._repo.delete("keep")
                raise RuntimeError("abort")
        self.assertEqual("v1", self._repo.get("keep"))

    def test_capacity_is_enforced(self) -> None:
        repo = SqliteRepository(":memory:", capacity_bytes=10)
        try:
            repo.set("k", "12345")
            with self.assertRaises(StorageQuotaExceeded):
                repo.set("j", "123456")
        finally:
            repo.close()


class TenantScopeTests(unittest.TestCase):
    def test_keys_are_isolated_per_tenant(self) -> None:
        repo = InMemoryRepository()
        acme = TenantScope(repo, "acme")
        other = TenantScope(repo, "acme:evil")

        acme.set("index", "[]")
        other.set("index", "[1]")

        self.assertEqual("[]", acme.get("index"))
        self.assertEqual(["index"], acme.list_keys())
        self.assertEqual("chat-context:acme:index", acme.full_key("index"))
        self.assertEqual("chat-context:acme%3Aevil:index", other.full_key("index"))

    def test_used_bytes_counts_full_keys(self) -> None:
        repo = InMemoryRepository()
        scope = TenantScope(repo, "t1")
        scope.set("a", "xyz")
        repo.set("unrelated", "x" * 100)
        self.assertEqual(len("chat-context:t1:a") + 3, scope.used_bytes())

    def test_empty_tenant_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            TenantScope(InMemoryRepository(), "")


if __name__ == "__main__":
    unittest.main()
