import unittest

from community_messaging.api_client import ApiError, MessagingApi
from community_messaging.directory import ConversationDirectory

from fake_api import FakeCommunity, start_fake_server


class ConversationDirectoryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.state = FakeCommunity()
        for user_id, name in (("u1", "Ann"), ("u2", "Bo"), ("u3", "Cy")):
            self.state.add_user(user_id, name)
        self.state.current_user = "u1"
        self.server, self.client = await start_fake_server(self.state)
        self.api = MessagingApi(str(self.server.make_url("")), session=self.client.session)
        self.directory = ConversationDirectory(self.api)

    async def asyncTearDown(self):
        await self.client.close()
        await self.server.close()

    async def test_fetch_lists_visible_conversations(self):
        mine = self.state.add_conversation(["u1", "u2"])
        self.state.add_conversation(["u2", "u3"])

        conversations = await self.directory.fetch()

        self.assertEqual([c.id for c in conversations], [mine])
        self.assertIsNone(self.directory.error)

    async def test_fetch_failure_keeps_previous_list(self):
        mine = self.state.add_conversation(["u1", "u2"])
        await self.directory.fetch()
        self.state.fail("GET", "conversations")

        conversations = await self.directory.fetch()

        self.assertEqual([c.id for c in conversations], [mine])
        self.assertEqual(self.directory.error, "Failed to fetch conversations")

    async def test_open_direct_reuses_existing_conversation(self):
        existing = self.state.add_conversation(["u1", "u2"])
        self.state.add_conversation(["u1", "u2", "u3"], is_group=True)

        conversation = await self.directory.open_direct("u2")

        self.assertEqual(conversation.id, existing)
        self.assertNotIn(("POST", "conversations"), self.state.requests)

    async def test_open_direct_creates_when_missing(self):
        conversation = await self.directory.open_direct("u3")

        self.assertIn(conversation.id, self.state.conversations)
        self.assertTrue(conversation.is_direct_with("u3"))
        self.assertEqual([c.id for c in self.directory.conversations], [conversation.id])

    async def test_create_failure_propagates(self):
        self.state.fail("POST", "conversations", status=403, error="Forbidden")

        with self.assertRaises(ApiError):
            await self.directory.create(["u2"])

    async def test_delete_removes_locally(self):
        conversation_id = self.state.add_conversation(["u1", "u2"])
        await self.directory.fetch()

        await self.directory.delete(conversation_id)

        self.assertIsNone(self.directory.get(conversation_id))
        self.assertNotIn(conversation_id, self.state.conversations)


if __name__ == "__main__":
    unittest.main()
