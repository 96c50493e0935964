from chatdesk.services.events import MESSAGE_RECEIVED, MESSAGE_SENT, EventBus


class TestEventBus:
    def test_publish_delivers_to_subscribers(self):
        bus = EventBus()
        received = []
        bus.subscribe(MESSAGE_RECEIVED, lambda event, payload: received.append((event, payload)))

        delivered = bus.publish(MESSAGE_RECEIVED, {"message_id": "1"})

        assert delivered == 1
        assert received == [(MESSAGE_RECEIVED, {"message_id": "1"})]

    def test_other_events_not_delivered(self):
        bus = EventBus()
        received = []
        bus.subscribe(MESSAGE_SENT, lambda event, payload: received.append(payload))

        assert bus.publish(MESSAGE_RECEIVED, {}) == 0
        assert received == []

    def test_failing_subscriber_is_isolated(self):
        bus = EventBus()
        received = []

        def broken(event, payload):
            raise RuntimeError("socket closed")

        bus.subscribe(MESSAGE_SENT, broken)
        bus.subscribe(MESSAGE_SENT, lambda event, payload: received.append(payload))

        assert bus.publish(MESSAGE_SENT, {"message_id": "2"}) == 1
        assert received == [{"message_id": "2"}]

    def test_unsubscribe(self):
        bus = EventBus()
        received = []

        def callback(event, payload):
            received.append(payload)

        bus.subscribe(MESSAGE_SENT, callback)
        bus.subscribe(MESSAGE_SENT, callback)
        bus.unsubscribe(MESSAGE_SENT, callback)

        assert bus.publish(MESSAGE_SENT, {}) == 0
        assert received == []
