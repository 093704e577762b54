import asyncio
import threading
import unittest
from datetime import datetime
from unittest import mock

from google.api_core import exceptions as gexc

from dreamtracker_game.errors import ConcurrentUpdate, StoreReadError, StoreWriteError
from dreamtracker_game.persistence import SERVER_TIMESTAMP, FirestorePersistence, InMemoryPersistence


class InMemoryPersistenceTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.store = InMemoryPersistence()

    async def test_get_missing_returns_none(self) -> None:
        self.assertIsNone(await self.store.get("games", "NOPE00"))

    async def test_set_overwrite_and_merge(self) -> None:
        await self.store.set("games", "ABC123", {"a": 1, "nested": {"x": 1, "y": 2}})
        await self.store.set("games", "ABC123", {"nested": {"y": 3}, "b": 2}, merge=True)
        self.assertEqual(
            await self.store.get("games", "ABC123"),
            {"a": 1, "b": 2, "nested": {"x": 1, "y": 3}},
        )
        await self.store.set("games", "ABC123", {"c": 3})
        self.assertEqual(await self.store.get("games", "ABC123"), {"c": 3})

    async def test_reads_are_copies(self) -> None:
        await self.store.set("games", "ABC123", {"players": {"H": {"morale": 50}}})
        doc = await self.store.get("games", "ABC123")
        doc["players"]["H"]["morale"] = 0
        self.assertEqual((await self.store.get("games", "ABC123"))["players"]["H"]["morale"], 50)

    async def test_server_timestamp_is_resolved(self) -> None:
        await self.store.set("matches", "m1", {"createdAt": self.store.server_timestamp})
        doc = await self.store.get("matches", "m1")
        self.assertIsInstance(doc["createdAt"], datetime)
        self.assertIs(self.store.server_timestamp, SERVER_TIMESTAMP)

    async def test_injected_failures(self) -> None:
        self.store.fail_writes = True
        with self.assertRaises(StoreWriteError):
            await self.store.set("games", "ABC123", {})
        with self.assertRaises(StoreWriteError):
            await self.store.delete("games", "ABC123")
        self.store.fail_writes = False
        self.store.fail_reads = True
        with self.assertRaises(StoreReadError):
            await self.store.get("games", "ABC123")
        with self.assertRaises(StoreReadError):
            await self.store.list_documents("games")

    async def test_set_if_version(self) -> None:
        await self.store.set_if_version("games", "ABC123", {"version": 1}, None)
        await self.store.set_if_version("games", "ABC123", {"version": 2}, 1)
        with self.assertRaises(ConcurrentUpdate):
            await self.store.set_if_version("games", "ABC123", {"version": 3}, 1)
        self.assertEqual((await self.store.get("games", "ABC123"))["version"], 2)

    async def test_create_never_overwrites(self) -> None:
        self.assertTrue(await self.store.create("matches", "m1", {"winnerId": "H"}))
        self.assertFalse(await self.store.create("matches", "m1", {"winnerId": "G"}))
        self.assertEqual(await self.store.get("matches", "m1"), {"winnerId": "H"})
        self.assertEqual(self.store.write_log, [("matches", "m1")])

    async def test_subscribe_sends_current_then_changes(self) -> None:
        seen = []
        await self.store.set("games", "ABC123", {"v": 1})
        unsubscribe = self.store.subscribe("games", "ABC123", seen.append)
        await self.store.set("games", "ABC123", {"v": 2})
        await self.store.delete("games", "ABC123")
        unsubscribe()
        unsubscribe()
        await self.store.set("games", "ABC123", {"v": 3})
        self.assertEqual(seen, [{"v": 1}, {"v": 2}, None])
        self.assertEqual(self.store.subscriber_count("games", "ABC123"), 0)

    async def test_list_documents(self) -> None:
        await self.store.set("matches", "a", {"id": "a"})
        await self.store.set("matches", "b", {"id": "b"})
        docs = await self.store.list_documents("matches")
        self.assertEqual(sorted(d["id"] for d in docs), ["a", "b"])
        self.assertEqual(await self.store.list_documents("empty"), [])


class FirestorePersistenceTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.client = mock.MagicMock()
        self.doc_ref = self.client.collection.return_value.document.return_value
        self.store = FirestorePersistence(client=self.client)

    def _snap(self, data, exists=True):
        snap = mock.MagicMock()
        snap.exists = exists
        snap.to_dict.return_value = data
        return snap

    async def test_get(self) -> None:
        self.doc_ref.get.return_value = self._snap({"gameCode": "ABC123"})
        self.assertEqual(await self.store.get("games", "ABC123"), {"gameCode": "ABC123"})
        self.client.collection.assert_called_with("games")
        self.client.collection.return_value.document.assert_called_with("ABC123")

        self.doc_ref.get.return_value = self._snap(None, exists=False)
        self.assertIsNone(await self.store.get("games", "ABC123"))

    async def test_set_passes_merge_flag(self) -> None:
        await self.store.set("games", "ABC123", {"a": 1}, merge=True)
        self.doc_ref.set.assert_called_once_with({"a": 1}, merge=True)

    async def test_api_errors_become_store_errors(self) -> None:
        self.doc_ref.get.side_effect = gexc.ServiceUnavailable("down")
        with self.assertRaises(StoreReadError):
            await self.store.get("games", "ABC123")
        self.doc_ref.set.side_effect = gexc.DeadlineExceeded("slow")
        with self.assertRaises(StoreWriteError):
            await self.store.set("games", "ABC123", {})
        self.doc_ref.delete.side_effect = gexc.PermissionDenied("no")
        with self.assertRaises(StoreWriteError):
            await self.store.delete("games", "ABC123")

    async def test_create_reports_existing_document(self) -> None:
        self.assertTrue(await self.store.create("matches", "m1", {"a": 1}))
        self.doc_ref.create.assert_called_once_with({"a": 1})

        self.doc_ref.create.side_effect = gexc.AlreadyExists("exists")
        self.assertFalse(await self.store.create("matches", "m1", {"a": 2}))

        self.doc_ref.create.side_effect = gexc.ServiceUnavailable("down")
        with self.assertRaises(StoreWriteError):
            await self.store.create("matches", "m1", {"a": 3})

    async def test_list_documents_streams_collection(self) -> None:
        self.client.collection.return_value.stream.return_value = [self._snap({"id": "a"}), self._snap(None)]
        self.assertEqual(await self.store.list_documents("matches"), [{"id": "a"}, {}])

    async def test_snapshot_callbacks_hop_onto_the_loop(self) -> None:
        received: asyncio.Queue = asyncio.Queue()
        unsubscribe = self.store.subscribe("games", "ABC123", received.put_nowait)
        callback = self.doc_ref.on_snapshot.call_args[0][0]

        worker = threading.Thread(target=callback, args=([self._snap({"v": 1})], [], None))
        worker.start()
        worker.join()
        self.assertEqual(await asyncio.wait_for(received.get(), timeout=1), {"v": 1})

        worker = threading.Thread(target=callback, args=([], [], None))
        worker.start()
        worker.join()
        self.assertIsNone(await asyncio.wait_for(received.get(), timeout=1))

        unsubscribe()
        self.doc_ref.on_snapshot.return_value.unsubscribe.assert_called_once_with()


if __name__ == "__main__":
    unittest.main()
