import unittest

import room_registry as reg_mod


class RoomRegistryTests(unittest.TestCase):
    def setUp(self):
        self.registry = reg_mod.RoomRegistry()
        for conn_id in (1, 2, 3):
            self.registry.connect(conn_id, object(), {"host": "10.0.0.%d" % conn_id})

    def test_recipients_by_audience(self):
        for conn_id in (1, 2):
            self.registry.join(conn_id, "mesa")
        self.registry.join(3, "outra-mesa")
        self.assertEqual(self.registry.recipients("mesa", 1, reg_mod.AUDIENCE_SENDER), [1])
        self.assertEqual(self.registry.recipients("mesa", 1, reg_mod.AUDIENCE_ROOM), [1, 2])
        self.assertEqual(self.registry.recipients("mesa", 1, reg_mod.AUDIENCE_ROOM_EXCEPT_SENDER), [2])
        with self.assertRaises(ValueError):
            self.registry.recipients("mesa", 1, "everyone")

    def test_join_moves_connection_between_rooms(self):
        self.registry.join(1, "mesa")
        self.registry.join(1, "outra-mesa")
        self.assertEqual(self.registry.members("mesa"), [])
        self.assertEqual(self.registry.members("outra-mesa"), [1])
        self.assertEqual(self.registry.room_of(1), "outra-mesa")
        self.assertEqual(self.registry.rooms(), {"outra-mesa": 1})

    def test_disconnect_forgets_membership(self):
        self.registry.join(2, "mesa")
        self.assertEqual(self.registry.disconnect(2), "mesa")
        self.assertEqual(self.registry.members("mesa"), [])
        self.assertIsNone(self.registry.socket_for(2))
        self.assertIsNone(self.registry.disconnect(2))

    def test_sessions_snapshot_lists_connections(self):
        self.registry.join(1, "mesa")
        snap = self.registry.sessions_snapshot()
        self.assertEqual([s["conn_id"] for s in snap], [1, 2, 3])
        self.assertEqual(snap[0]["room_id"], "mesa")
        self.assertEqual(snap[0]["host"], "10.0.0.1")
        self.assertIsNone(snap[1]["room_id"])


if __name__ == "__main__":
    unittest.main()
