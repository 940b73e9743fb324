import json
from unittest import skipUnless
from unittest.mock import MagicMock, patch

import fakeredis
import redis
from django.conf import settings
from django.test import SimpleTestCase, override_settings

from apps.timeline.models import (
    TIMELINE_PAGE_SIZE,
    Item,
    RSortedSetTimeline,
    RStreamTimeline,
    Timeline,
    TimelineBackend,
    TimelineBackendError,
    TimelineItemNotFound,
    TimelineNotImplemented,
    TimelineTimeFormatError,
    TimelineType,
    UnknownTimelineType,
    format_score,
    get_timeline,
    published_score,
    timeline_type_for_channel,
)
from apps.timeline.signals import item_added

TEST_REDIS_DB = 15


def _published(seconds):
    """ISO 8601 publication time `seconds` after the Unix epoch."""
    return "1970-01-01T00:%02d:%02dZ" % divmod(seconds, 60)


def _payload(item_id, seconds, read=False, **data):
    return json.dumps(Item(item_id, published=_published(seconds), read=read, data=data).to_dict())


def _redis_available():
    try:
        return redis.Redis(
            host=settings.REDIS_TIMELINE["host"],
            port=settings.REDIS_TIMELINE["port"],
            db=TEST_REDIS_DB,
            socket_connect_timeout=0.2,
        ).ping()
    except redis.RedisError:
        return False


class Test_PublishedScore(SimpleTestCase):
    def test_utc_designator(self):
        self.assertEqual(published_score("1970-01-01T00:00:30Z"), 30)

    def test_offset(self):
        self.assertEqual(published_score("1970-01-01T01:00:30+01:00"), 30)

    def test_naive_time_is_utc(self):
        self.assertEqual(published_score("1970-01-01T00:01:00"), 60)

    def test_bytes(self):
        self.assertEqual(published_score(b"2020-01-01T00:00:00+00:00"), 1577836800)

    def test_lowercase_utc_designator(self):
        self.assertEqual(published_score("1970-01-01t00:00:30z"), 30)

    def test_one_digit_fraction(self):
        self.assertEqual(published_score("2024-01-01T00:00:00.5Z"), 1704067200)

    def test_nanosecond_fraction(self):
        self.assertEqual(published_score("2024-01-01T00:00:01.123456789Z"), 1704067201)

    def test_fraction_with_offset(self):
        self.assertEqual(published_score("2024-01-01T02:00:00.25+02:00"), 1704067200)

    def test_unparseable(self):
        with self.assertRaises(TimelineTimeFormatError) as ctx:
            published_score("last tuesday")
        self.assertIn("last tuesday", str(ctx.exception))

    def test_unparseable_is_value_error(self):
        with self.assertRaises(ValueError):
            published_score("")

    def test_format_integral_score(self):
        self.assertEqual(format_score(1577836800.0), "1577836800")
        self.assertEqual(format_score("20"), "20")

    def test_format_fractional_score(self):
        self.assertEqual(format_score(20.5), "20.5")


class Test_Item(SimpleTestCase):
    def test_from_dict_splits_payload(self):
        item = Item.from_dict(
            {
                "_id": "abc",
                "published": "2020-01-01T00:00:00Z",
                "_is_read": True,
                "name": "Hello",
                "type": "entry",
            }
        )
        self.assertEqual(item.id, "abc")
        self.assertEqual(item.published, "2020-01-01T00:00:00Z")
        self.assertTrue(item.read)
        self.assertEqual(item.data, {"name": "Hello", "type": "entry"})

    def test_to_dict(self):
        item = Item("abc", published="2020-01-01T00:00:00Z", data={"name": "Hello"})
        self.assertEqual(
            item.to_dict(),
            {"_id": "abc", "published": "2020-01-01T00:00:00Z", "_is_read": False, "name": "Hello"},
        )

    def test_payload_id_field_is_kept(self):
        item = Item.from_dict({"_id": "abc", "id": "https://example.com/post/1"})
        self.assertEqual(item.id, "abc")
        self.assertEqual(item.data["id"], "https://example.com/post/1")

    def test_from_json_rejects_non_object(self):
        with self.assertRaises(ValueError):
            Item.from_json("[1, 2, 3]")

    def test_timeline_to_dict(self):
        page = Timeline([Item("a", published="2020-01-01T00:00:00Z")], before="10", after="20")
        self.assertEqual(
            page.to_dict(),
            {
                "items": [{"_id": "a", "published": "2020-01-01T00:00:00Z", "_is_read": False}],
                "paging": {"before": "10", "after": "20"},
            },
        )

    def test_empty_timeline_to_dict(self):
        self.assertEqual(Timeline().to_dict(), {"items": [], "paging": {"before": "", "after": ""}})


class SortedSetTestCase(SimpleTestCase):
    """Wires a mocked Redis client and pipeline into an RSortedSetTimeline."""

    def setUp(self):
        patcher = patch("apps.timeline.models.redis.Redis")
        self.mock_redis_cls = patcher.start()
        self.addCleanup(patcher.stop)

        self.mock_r = MagicMock()
        self.mock_redis_cls.return_value.__enter__.return_value = self.mock_r
        self.mock_pipe = MagicMock()
        self.mock_r.pipeline.return_value.__enter__.return_value = self.mock_pipe

        self.pool = MagicMock()
        self.timeline = RSortedSetTimeline("home", connection_pool=self.pool)


class Test_SortedSetItems(SortedSetTestCase):
    def test_unbounded_query(self):
        self.mock_r.zrangebyscore.return_value = []

        self.timeline.items("", "")

        self.mock_redis_cls.assert_called_once_with(connection_pool=self.pool)
        self.mock_r.zrangebyscore.assert_called_once_with(
            "zchannel:home:posts", "-inf", "+inf", start=0, num=TIMELINE_PAGE_SIZE, withscores=True
        )

    def test_bounds_are_exclusive(self):
        self.mock_r.zrangebyscore.return_value = []

        self.timeline.items(before="50", after="10")

        self.mock_r.zrangebyscore.assert_called_once_with(
            "zchannel:home:posts", "(10", "(50", start=0, num=TIMELINE_PAGE_SIZE, withscores=True
        )

    def test_cursor_spans_page(self):
        self.mock_r.zrangebyscore.return_value = [("item:b", 20.0), ("item:c", 30.0), ("item:d", 40.0)]
        self.mock_pipe.execute.return_value = [_payload("b", 20), _payload("c", 30), _payload("d", 40)]

        page = self.timeline.items(before="50", after="10")

        self.assertEqual([item.id for item in page.items], ["b", "c", "d"])
        self.assertEqual(page.before, "20")
        self.assertEqual(page.after, "40")
        self.mock_pipe.hget.assert_any_call("item:c", "data")
        self.mock_pipe.execute.assert_called_once_with(raise_on_error=False)

    def test_single_entry_resets_cursor(self):
        self.mock_r.zrangebyscore.return_value = [("item:b", 20.0)]
        self.mock_pipe.execute.return_value = [_payload("b", 20)]

        page = self.timeline.items(before="30", after="10")

        self.assertEqual(len(page.items), 1)
        self.assertEqual((page.before, page.after), ("", ""))

    def test_empty_page(self):
        self.mock_r.zrangebyscore.return_value = []

        page = self.timeline.items("", "")

        self.assertEqual(page.items, [])
        self.assertEqual((page.before, page.after), ("", ""))
        self.mock_r.pipeline.assert_not_called()

    def test_bytes_item_keys(self):
        self.mock_r.zrangebyscore.return_value = [(b"item:b", 20.0), (b"item:c", 30.0)]
        self.mock_pipe.execute.return_value = [_payload("b", 20), _payload("c", 30)]

        self.timeline.items()

        self.mock_pipe.hget.assert_any_call("item:b", "data")

    def test_items_are_always_unread(self):
        self.mock_r.zrangebyscore.return_value = [("item:b", 20.0), ("item:c", 30.0)]
        self.mock_pipe.execute.return_value = [_payload("b", 20, read=True), _payload("c", 30, read=True)]

        page = self.timeline.items()

        self.assertEqual(len(page.items), 2)
        for item in page.items:
            self.assertFalse(item.read)

    def test_corrupt_records_are_skipped(self):
        self.mock_r.zrangebyscore.return_value = [
            ("item:a", 10.0),
            ("item:b", 20.0),
            ("item:c", 30.0),
            ("item:d", 40.0),
            ("item:e", 50.0),
        ]
        self.mock_pipe.execute.return_value = [
            "{not json",
            _payload("b", 20, name="Keep me"),
            None,
            redis.ResponseError("WRONGTYPE Operation against a key holding the wrong kind of value"),
            "[]",
        ]

        page = self.timeline.items()

        self.assertEqual([item.id for item in page.items], ["b"])
        self.assertEqual(page.items[0].data, {"name": "Keep me"})
        self.assertEqual((page.before, page.after), ("10", "50"))

    def test_malformed_cursor_propagates(self):
        self.mock_r.zrangebyscore.side_effect = redis.ResponseError("min or max is not a float")

        with self.assertRaises(redis.ResponseError):
            self.timeline.items(before="yesterday")

    def test_connection_released_on_error(self):
        self.mock_r.zrangebyscore.side_effect = redis.ConnectionError("Connection refused")

        with self.assertRaises(redis.ConnectionError):
            self.timeline.items()

        self.mock_redis_cls.return_value.__exit__.assert_called_once()


class Test_SortedSetAddItem(SortedSetTestCase):
    def setUp(self):
        super().setUp()
        self.mock_pipe.sismember.return_value = False

    def test_indexes_unread_item(self):
        item = Item("a", published=_published(30), data={"name": "Hello"})

        self.timeline.add_item(item)

        self.mock_pipe.watch.assert_called_once_with("channel:home:read")
        self.mock_pipe.sismember.assert_called_once_with("channel:home:read", "item:a")
        self.mock_pipe.hset.assert_called_once_with(
            "item:a",
            mapping={"id": "a", "published": _published(30), "read": 0, "data": item.to_json()},
        )
        self.mock_pipe.zadd.assert_called_once_with("zchannel:home:posts", {"item:a": 30})
        self.mock_pipe.srem.assert_called_once_with("channel:home:unindexed", "item:a")
        self.mock_pipe.multi.assert_called_once()
        self.mock_pipe.execute.assert_called_once()

    def test_readding_uses_same_member(self):
        item = Item("a", published=_published(30))

        self.timeline.add_item(item)
        self.timeline.add_item(item)

        self.assertEqual(self.mock_pipe.zadd.call_count, 2)
        for call_args in self.mock_pipe.zadd.call_args_list:
            self.assertEqual(call_args.args, ("zchannel:home:posts", {"item:a": 30}))

    def test_defaults_published_to_now(self):
        item = Item("a")

        self.timeline.add_item(item)

        self.assertEqual(item.published, "")
        record = self.mock_pipe.hset.call_args.kwargs["mapping"]
        stored_published = record["published"]
        self.assertTrue(stored_published)
        self.assertEqual(json.loads(record["data"])["published"], stored_published)
        score = published_score(stored_published)
        self.mock_pipe.zadd.assert_called_once_with("zchannel:home:posts", {"item:a": score})

    def test_read_item_is_not_indexed(self):
        self.mock_pipe.sismember.return_value = True
        item = Item("a", published=_published(30))

        self.timeline.add_item(item)

        self.mock_pipe.hset.assert_called_once()
        self.mock_pipe.zadd.assert_not_called()
        self.mock_pipe.execute.assert_called_once()

    def test_unparseable_published(self):
        item = Item("a", published="not a date")

        with self.assertRaises(TimelineTimeFormatError):
            self.timeline.add_item(item)

        self.mock_pipe.hset.assert_called_once()
        self.mock_pipe.sadd.assert_called_once_with("channel:home:unindexed", "item:a")
        self.mock_pipe.zadd.assert_not_called()

    def test_unserializable_item(self):
        item = Item("a", published=_published(30), data={"when": object()})

        with self.assertRaises(TypeError):
            self.timeline.add_item(item)

        self.mock_redis_cls.assert_not_called()

    def test_watch_conflict_propagates(self):
        self.mock_pipe.execute.side_effect = redis.WatchError("Watched variable changed.")

        with self.assertRaises(redis.WatchError):
            self.timeline.add_item(Item("a", published=_published(30)))

    def connect_receiver(self, raises=None):
        """Connect an item_added receiver that records its keyword arguments."""
        received = []

        def receiver(sender, **kwargs):
            received.append(dict(kwargs, sender=sender))
            if raises:
                raise raises

        item_added.connect(receiver, weak=False, dispatch_uid="timeline-tests")
        self.addCleanup(item_added.disconnect, dispatch_uid="timeline-tests")
        return received

    def test_sends_item_added(self):
        received = self.connect_receiver()
        item = Item("a", published=_published(30))

        self.timeline.add_item(item)

        self.assertEqual(len(received), 1)
        self.assertEqual(received[0]["sender"], RSortedSetTimeline)
        self.assertEqual(received[0]["channel"], "home")
        self.assertIs(received[0]["item"], item)

    def test_no_item_added_for_read_item(self):
        self.mock_pipe.sismember.return_value = True
        received = self.connect_receiver()

        self.timeline.add_item(Item("a", published=_published(30)))

        self.assertEqual(received, [])

    def test_failing_receiver_does_not_fail_add(self):
        received = self.connect_receiver(raises=RuntimeError("notifier down"))

        self.timeline.add_item(Item("a", published=_published(30)))

        self.assertEqual(len(received), 1)
        self.mock_pipe.zadd.assert_called_once()


class Test_SortedSetCount(SortedSetTestCase):
    def test_count(self):
        self.mock_r.zcard.return_value = 3

        self.assertEqual(self.timeline.count(), 3)
        self.mock_r.zcard.assert_called_once_with("zchannel:home:posts")

    def test_backend_error_names_channel(self):
        self.mock_r.zcard.side_effect = redis.ConnectionError("Connection refused")

        with self.assertRaises(TimelineBackendError) as ctx:
            self.timeline.count()

        self.assertIn("home", str(ctx.exception))
        self.assertIsInstance(ctx.exception.__cause__, redis.ConnectionError)


class Test_SortedSetMarkRead(SortedSetTestCase):
    def test_mark_read(self):
        self.mock_r.zscore.return_value = 30.0

        self.timeline.mark_read("a")

        self.mock_r.zscore.assert_called_once_with("zchannel:home:posts", "item:a")
        self.mock_pipe.hset.assert_called_once_with("item:a", "read", 1)
        self.mock_pipe.zrem.assert_called_once_with("zchannel:home:posts", "item:a")
        self.mock_pipe.sadd.assert_called_once_with("channel:home:read", "item:a")
        self.mock_pipe.execute.assert_called_once()

    def test_mark_read_again(self):
        self.mock_r.zscore.return_value = None
        self.mock_r.sismember.return_value = True

        self.timeline.mark_read("a")

        self.mock_pipe.sadd.assert_called_once_with("channel:home:read", "item:a")

    def test_mark_read_item_outside_channel(self):
        self.mock_r.zscore.return_value = None
        self.mock_r.sismember.return_value = False

        with self.assertRaises(TimelineItemNotFound):
            self.timeline.mark_read("elsewhere")

        self.mock_r.pipeline.assert_not_called()

    def test_mark_unread_item_outside_channel(self):
        self.mock_r.hget.return_value = "1970-01-01T00:00:30+00:00"
        self.mock_r.zscore.return_value = None
        self.mock_r.sismember.return_value = False

        with self.assertRaises(TimelineItemNotFound):
            self.timeline.mark_unread("elsewhere")

        self.mock_r.pipeline.assert_not_called()

    def test_mark_unread_restores_score(self):
        self.mock_r.hget.return_value = "1970-01-01T00:00:30+00:00"
        self.mock_r.zscore.return_value = None
        self.mock_r.sismember.return_value = True

        self.timeline.mark_unread("a")

        self.mock_r.hget.assert_called_once_with("item:a", "published")
        self.mock_pipe.hset.assert_called_once_with("item:a", "read", 0)
        self.mock_pipe.srem.assert_called_once_with("channel:home:read", "item:a")
        self.mock_pipe.zadd.assert_called_once_with("zchannel:home:posts", {"item:a": 30})

    def test_mark_unread_unknown_item(self):
        self.mock_r.hget.return_value = None

        with self.assertRaises(TimelineItemNotFound):
            self.timeline.mark_unread("missing")

    def test_mark_unread_bad_published(self):
        self.mock_r.hget.return_value = "garbage"

        with self.assertRaises(TimelineTimeFormatError):
            self.timeline.mark_unread("a")

        self.mock_pipe.zadd.assert_not_called()


class Test_SortedSetReconcile(SortedSetTestCase):
    def test_removes_dangling_and_clears_orphans(self):
        self.mock_r.zscan_iter.return_value = iter([("item:a", 10.0), ("item:b", 20.0)])
        self.mock_r.smembers.return_value = ["item:c", "item:d", "item:e"]
        self.mock_pipe.execute.side_effect = [
            [1, 0],
            [
                1, None, False,  # item:c still waiting
                0, None, False,  # item:d record gone
                1, 40.0, False,  # item:e indexed since
            ],
        ]

        stats = self.timeline.reconcile()

        self.assertEqual(stats, {"dangling_removed": 1, "orphans_cleared": 2, "orphans_remaining": 1})
        self.mock_r.zrem.assert_called_once_with("zchannel:home:posts", "item:b")
        self.mock_r.srem.assert_called_once_with("channel:home:unindexed", "item:d", "item:e")

    def test_nothing_to_do(self):
        self.mock_r.zscan_iter.return_value = iter([])
        self.mock_r.smembers.return_value = []

        stats = self.timeline.reconcile()

        self.assertEqual(stats, {"dangling_removed": 0, "orphans_cleared": 0, "orphans_remaining": 0})
        self.mock_r.zrem.assert_not_called()
        self.mock_r.srem.assert_not_called()


class Test_StreamTimeline(SimpleTestCase):
    def setUp(self):
        self.timeline = RStreamTimeline("notifications", connection_pool=MagicMock())

    def test_count_is_zero(self):
        self.assertEqual(self.timeline.count(), 0)

    def test_unsupported_operations(self):
        operations = [
            lambda: self.timeline.items("", ""),
            lambda: self.timeline.add_item(Item("a", published=_published(30))),
            lambda: self.timeline.mark_read("a"),
            lambda: self.timeline.mark_unread("a"),
            lambda: self.timeline.reconcile(),
        ]
        for operation in operations:
            with self.assertRaises(TimelineNotImplemented):
                operation()

    def test_bare_backend_names_itself(self):
        timeline = TimelineBackend("home", connection_pool=MagicMock())

        with self.assertRaises(TimelineNotImplemented) as ctx:
            timeline.count()

        self.assertIn("TimelineBackend", str(ctx.exception))

    def test_unsupported_is_not_implemented_error(self):
        with self.assertRaises(NotImplementedError) as ctx:
            self.timeline.items()
        self.assertIn("stream", str(ctx.exception))


class Test_GetTimeline(SimpleTestCase):
    @override_settings(TIMELINE_DEFAULT_TYPE="sorted-set", TIMELINE_CHANNEL_TYPES={})
    def test_default_type(self):
        timeline = get_timeline("home")
        self.assertIsInstance(timeline, RSortedSetTimeline)
        self.assertEqual(timeline.channel, "home")

    @override_settings(TIMELINE_DEFAULT_TYPE="sorted-set", TIMELINE_CHANNEL_TYPES={"notifications": "stream"})
    def test_channel_override(self):
        self.assertIsInstance(get_timeline("notifications"), RStreamTimeline)
        self.assertIsInstance(get_timeline("home"), RSortedSetTimeline)

    @override_settings(TIMELINE_DEFAULT_TYPE="stream", TIMELINE_CHANNEL_TYPES={})
    def test_configured_default(self):
        self.assertEqual(timeline_type_for_channel("home"), TimelineType.STREAM)

    @override_settings(TIMELINE_DEFAULT_TYPE="sorted-set", TIMELINE_CHANNEL_TYPES={"home": "ring-buffer"})
    def test_unknown_type(self):
        with self.assertRaises(UnknownTimelineType):
            get_timeline("home")

    def test_connection_pool_is_passed_on(self):
        pool = MagicMock()
        self.assertIs(get_timeline("home", connection_pool=pool).connection_pool, pool)


class Test_ReconcileTask(SimpleTestCase):
    @patch("apps.timeline.models.get_timeline")
    def test_reconciles_channel(self, mock_get_timeline):
        from apps.timeline.tasks import ReconcileTimeline

        mock_get_timeline.return_value.reconcile.return_value = {"dangling_removed": 2}

        result = ReconcileTimeline("home")

        mock_get_timeline.assert_called_once_with("home")
        self.assertEqual(result, {"dangling_removed": 2})

    @override_settings(TIMELINE_CHANNEL_TYPES={"notifications": "stream"})
    def test_skips_unsupported_variant(self):
        from apps.timeline.tasks import ReconcileTimeline

        self.assertIsNone(ReconcileTimeline("notifications"))


class Test_Log(SimpleTestCase):
    def test_plain_words_are_not_recolored(self):
        from utils import log

        self.assertEqual(log.colorize("user AnonymousUser"), "user AnonymousUser\033[0m\033[37m\033[49m")

    def test_arrow_is_colored(self):
        from utils import log

        self.assertEqual(log.decolorize("~FB~SB--->~FW"), "--->")
        self.assertTrue(log.colorize(" ---> done").startswith(" \033[34m\033[1m--->"))


class Test_SortedSetTimelineStore(SimpleTestCase):
    """Runs the sorted-set timeline against an in-memory Redis server."""

    def make_pool(self):
        return redis.ConnectionPool(
            connection_class=fakeredis.FakeConnection,
            server=fakeredis.FakeServer(),
            decode_responses=True,
        )

    def setUp(self):
        self.pool = self.make_pool()
        self.r = redis.Redis(connection_pool=self.pool)
        self.r.flushdb()
        self.addCleanup(self.pool.disconnect)
        self.addCleanup(self.r.flushdb)
        self.timeline = RSortedSetTimeline("home", connection_pool=self.pool)

    def add(self, item_id, seconds, **kwargs):
        item = Item(item_id, published=_published(seconds), **kwargs)
        self.timeline.add_item(item)
        return item

    def test_adding_twice_indexes_once(self):
        self.add("a", 30)
        self.add("a", 30)

        self.assertEqual(self.timeline.count(), 1)
        self.assertEqual(self.r.zcard("zchannel:home:posts"), 1)
        self.assertEqual(len(self.r.keys("item:*")), 1)

    def test_readding_moves_item(self):
        self.add("a", 30)
        self.add("a", 45)

        self.assertEqual(self.r.zscore("zchannel:home:posts", "item:a"), 45)

    def test_read_item_is_not_reindexed(self):
        self.add("a", 30)
        self.timeline.mark_read("a")
        self.add("a", 30, data={"name": "Updated"})

        self.assertEqual(self.timeline.count(), 0)
        self.assertEqual(json.loads(self.r.hget("item:a", "data"))["name"], "Updated")

    def test_pagination_is_exclusive(self):
        for seconds, item_id in [(10, "a"), (20, "b"), (30, "c"), (40, "d"), (50, "e")]:
            self.add(item_id, seconds)

        page = self.timeline.items(before="50", after="10")

        self.assertEqual([item.id for item in page.items], ["b", "c", "d"])
        self.assertEqual((page.before, page.after), ("20", "40"))

    def test_cursor_exhaustion(self):
        for seconds, item_id in [(10, "a"), (20, "b"), (30, "c")]:
            self.add(item_id, seconds)

        page = self.timeline.items(before="30", after="10")

        self.assertEqual([item.id for item in page.items], ["b"])
        self.assertEqual((page.before, page.after), ("", ""))

    def test_page_size(self):
        for i in range(TIMELINE_PAGE_SIZE + 5):
            self.add("item-%02d" % i, i + 1)

        page = self.timeline.items()

        self.assertEqual(len(page.items), TIMELINE_PAGE_SIZE)
        self.assertEqual(page.before, "1")
        self.assertEqual(page.after, str(TIMELINE_PAGE_SIZE))

    def test_equal_scores_order_by_item_key(self):
        self.add("b", 30)
        self.add("a", 30)
        self.add("c", 30)

        self.assertEqual([item.id for item in self.timeline.items().items], ["a", "b", "c"])

    def test_items_are_listed_unread(self):
        self.add("a", 30, read=True)
        self.add("b", 40)

        page = self.timeline.items()

        self.assertEqual(len(page.items), 2)
        self.assertFalse(any(item.read for item in page.items))

    def test_corrupt_record_is_skipped(self):
        self.add("a", 10)
        self.add("b", 20)
        self.add("c", 30)
        self.r.hset("item:b", "data", "{not json")

        page = self.timeline.items()

        self.assertEqual([item.id for item in page.items], ["a", "c"])

    def test_malformed_cursor(self):
        with self.assertRaises(redis.ResponseError):
            self.timeline.items(before="yesterday")

    def test_unparseable_published(self):
        with self.assertRaises(TimelineTimeFormatError):
            self.timeline.add_item(Item("a", published="Tuesday, sometime"))

        self.assertEqual(self.timeline.count(), 0)
        self.assertTrue(self.r.exists("item:a"))
        self.assertTrue(self.r.sismember("channel:home:unindexed", "item:a"))

    def test_count_matches_adds(self):
        for i in range(7):
            self.add("item-%s" % i, 10 + i)

        self.assertEqual(self.timeline.count(), 7)

    def test_mark_read_and_unread(self):
        self.add("a", 30)
        self.add("b", 40)

        self.timeline.mark_read("a")
        self.assertEqual(self.timeline.count(), 1)
        self.assertEqual(self.r.hget("item:a", "read"), "1")
        self.assertTrue(self.r.sismember("channel:home:read", "item:a"))

        self.timeline.mark_unread("a")
        self.assertEqual(self.timeline.count(), 2)
        self.assertEqual(self.r.zscore("zchannel:home:posts", "item:a"), 30)
        self.assertEqual(self.r.hget("item:a", "read"), "0")
        self.assertFalse(self.r.sismember("channel:home:read", "item:a"))

    def test_mark_read_keeps_payload(self):
        self.add("a", 30, data={"name": "Hello"})
        before = self.r.hget("item:a", "data")

        self.timeline.mark_read("a")

        self.assertEqual(self.r.hget("item:a", "data"), before)

    def test_channels_are_separate(self):
        other = RSortedSetTimeline("other", connection_pool=self.pool)
        self.add("a", 30)
        other.add_item(Item("b", published=_published(40)))
        self.timeline.mark_read("a")

        self.assertEqual(self.timeline.count(), 0)
        self.assertEqual(other.count(), 1)

    def test_reconcile(self):
        self.add("a", 10)
        self.add("b", 20)
        with self.assertRaises(TimelineTimeFormatError):
            self.timeline.add_item(Item("c", published="soon"))
        self.r.delete("item:a")

        stats = self.timeline.reconcile()

        self.assertEqual(stats, {"dangling_removed": 1, "orphans_cleared": 0, "orphans_remaining": 1})
        self.assertEqual(self.timeline.count(), 1)

        self.add("c", 30)
        stats = self.timeline.reconcile()
        self.assertEqual(stats, {"dangling_removed": 0, "orphans_cleared": 0, "orphans_remaining": 0})
        self.assertFalse(self.r.exists("channel:home:unindexed"))

    def test_boundary_ties_are_dropped(self):
        for i in range(TIMELINE_PAGE_SIZE + 5):
            self.add("item-%02d" % i, 30)

        page = self.timeline.items()

        self.assertEqual(len(page.items), TIMELINE_PAGE_SIZE)
        self.assertEqual((page.before, page.after), ("30", "30"))
        self.assertEqual(self.timeline.items(after=page.after).items, [])
        self.assertEqual(self.timeline.count(), TIMELINE_PAGE_SIZE + 5)

    def test_defaulted_published_leaves_item_alone(self):
        item = Item("a", data={"name": "Hello"})

        self.timeline.add_item(item)

        self.assertEqual(item.published, "")
        self.assertTrue(self.r.hget("item:a", "published"))
        self.assertEqual(self.timeline.count(), 1)

    def test_mark_read_in_other_channel(self):
        other = RSortedSetTimeline("other", connection_pool=self.pool)
        self.add("a", 30)

        with self.assertRaises(TimelineItemNotFound):
            other.mark_read("a")

        self.assertEqual(self.r.hget("item:a", "read"), "0")
        self.assertEqual(self.timeline.count(), 1)

    def test_mark_unread_in_other_channel(self):
        other = RSortedSetTimeline("other", connection_pool=self.pool)
        self.add("a", 30)
        self.timeline.mark_read("a")

        with self.assertRaises(TimelineItemNotFound):
            other.mark_unread("a")

        self.assertEqual(other.count(), 0)
        self.assertTrue(self.r.sismember("channel:home:read", "item:a"))

    def test_mark_read_twice(self):
        self.add("a", 30)

        self.timeline.mark_read("a")
        self.timeline.mark_read("a")

        self.assertEqual(self.timeline.count(), 0)


@skipUnless(_redis_available(), "Redis is not reachable")
class Test_SortedSetTimelineRedis(Test_SortedSetTimelineStore):
    """Runs the same checks against a live Redis database."""

    def make_pool(self):
        return redis.ConnectionPool(
            host=settings.REDIS_TIMELINE["host"],
            port=settings.REDIS_TIMELINE["port"],
            db=TEST_REDIS_DB,
            decode_responses=True,
        )
