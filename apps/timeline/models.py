"""
Redis-backed channel timelines.

Every channel is served by one backend variant, picked from settings by
get_timeline(). The sorted-set variant uses these keys:

- zchannel:{channel}:posts - sorted set of unread item keys scored by
  publication time (Unix seconds)
- item:{id} - hash with id, published, read (1/0) and data (item JSON)
- channel:{channel}:read - set of item keys marked read in the channel
- channel:{channel}:unindexed - set of item keys stored but never indexed
  because their publication time did not parse

Items sharing a score are ordered by item key, which is how Redis orders
equal-score members.
"""

import datetime
import enum
import json
import re

import pytz
import redis
from django.conf import settings

from apps.timeline.signals import item_added
from utils import log as logging

TIMELINE_PAGE_SIZE = 20

UTC_DESIGNATOR = re.compile(r"[zZ]$")
SECOND_FRACTION = re.compile(r"(:\d{2})\.(\d+)")


class TimelineError(Exception):
    pass


class TimelineBackendError(TimelineError):
    pass


class TimelineTimeFormatError(TimelineError, ValueError):
    pass


class TimelineNotImplemented(TimelineError, NotImplementedError):
    pass


class TimelineItemNotFound(TimelineError):
    pass


class UnknownTimelineType(TimelineError):
    pass


class TimelineType(enum.Enum):
    SORTED_SET = "sorted-set"
    STREAM = "stream"


def _decode(value):
    return value.decode() if isinstance(value, bytes) else value


def now_published():
    return datetime.datetime.now(pytz.utc).replace(microsecond=0).isoformat()


def _normalize_published(published):
    published = UTC_DESIGNATOR.sub("+00:00", published)
    return SECOND_FRACTION.sub(
        lambda m: "%s.%s" % (m.group(1), m.group(2)[:6].ljust(6, "0")), published, count=1
    )


def published_score(published):
    """Parse an ISO 8601 publication time into Unix seconds.

    Times without an offset are taken as UTC. Fractions of a second of any
    length and a lowercase ``z`` are accepted, as RFC 3339 allows.
    """
    published = _decode(published)
    if isinstance(published, str):
        published = _normalize_published(published)
    try:
        published_date = datetime.datetime.fromisoformat(published)
    except (TypeError, ValueError) as e:
        raise TimelineTimeFormatError("error can't parse %s as time" % published) from e
    if published_date.tzinfo is None:
        published_date = pytz.utc.localize(published_date)
    return int(published_date.timestamp())


def format_score(score):
    score = float(score)
    if score.is_integer():
        return "%d" % score
    return repr(score)


class Item:
    """A feed item. Everything besides id, published and read is opaque payload."""

    def __init__(self, id, published="", read=False, data=None):
        self.id = id
        self.published = published or ""
        self.read = bool(read)
        self.data = dict(data or {})

    def __repr__(self):
        return "<Item %s (%s)%s>" % (self.id, self.published, " read" if self.read else "")

    def __eq__(self, other):
        if not isinstance(other, Item):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    @classmethod
    def from_dict(cls, item_dict):
        if not isinstance(item_dict, dict):
            raise ValueError("item must be an object, not %s" % type(item_dict).__name__)
        data = dict(item_dict)
        item_id = data.pop("_id", "")
        published = data.pop("published", "")
        read = data.pop("_is_read", False)
        return cls(item_id, published=published, read=read, data=data)

    @classmethod
    def from_json(cls, payload):
        return cls.from_dict(json.loads(payload))

    def to_dict(self):
        item_dict = dict(self.data)
        item_dict["_id"] = self.id
        item_dict["published"] = self.published
        item_dict["_is_read"] = self.read
        return item_dict

    def to_json(self):
        return json.dumps(self.to_dict())


class Timeline:
    """One page of a channel timeline with the cursors around it."""

    def __init__(self, items=None, before="", after=""):
        self.items = items or []
        self.before = before
        self.after = after

    def __repr__(self):
        return "<Timeline %s items before=%r after=%r>" % (len(self.items), self.before, self.after)

    def to_dict(self):
        return {
            "items": [item.to_dict() for item in self.items],
            "paging": {
                "before": self.before,
                "after": self.after,
            },
        }


class TimelineBackend:
    """Operations every timeline variant offers.

    A variant that lacks an operation raises TimelineNotImplemented, which
    callers can catch to handle the capability gap.
    """

    timeline_type = None

    def __init__(self, channel, connection_pool=None):
        self.channel = channel
        self.connection_pool = connection_pool

    def __repr__(self):
        return "<%s %s>" % (self.__class__.__name__, self.channel)

    def _get_redis(self):
        pool = self.connection_pool
        if pool is None:
            pool = settings.REDIS_TIMELINE_POOL
        return redis.Redis(connection_pool=pool)

    @property
    def type_name(self):
        if self.timeline_type is None:
            return self.__class__.__name__
        return self.timeline_type.value

    def _not_implemented(self, operation):
        raise TimelineNotImplemented(
            "%s timeline for %s does not support %s" % (self.type_name, self.channel, operation)
        )

    def items(self, before="", after=""):
        self._not_implemented("items")

    def add_item(self, item):
        self._not_implemented("add_item")

    def count(self):
        self._not_implemented("count")

    def mark_read(self, uid):
        self._not_implemented("mark_read")

    def mark_unread(self, uid):
        self._not_implemented("mark_unread")

    def reconcile(self):
        self._not_implemented("reconcile")


class RSortedSetTimeline(TimelineBackend):
    timeline_type = TimelineType.SORTED_SET

    @property
    def posts_key(self):
        return "zchannel:%s:posts" % self.channel

    @property
    def read_key(self):
        return "channel:%s:read" % self.channel

    @property
    def unindexed_key(self):
        return "channel:%s:unindexed" % self.channel

    @staticmethod
    def item_key(uid):
        return "item:%s" % uid

    def items(self, before="", after=""):
        """Return up to TIMELINE_PAGE_SIZE items scored strictly between after and before.

        Items come back oldest first. The new cursor pair spans the scores of
        the first and last item of the page and resets to empty strings once
        fewer than two items are left. Cursors carry only a score and bounds
        are exclusive, so items sharing the score at a page boundary are
        dropped from the next page. Records that are missing or do not decode
        are skipped. Every item is returned unread.
        """
        after_score = "(%s" % after if after else "-inf"
        before_score = "(%s" % before if before else "+inf"

        with self._get_redis() as r:
            entries = r.zrangebyscore(
                self.posts_key,
                after_score,
                before_score,
                start=0,
                num=TIMELINE_PAGE_SIZE,
                withscores=True,
            )

            if len(entries) >= 2:
                before = format_score(entries[0][1])
                after = format_score(entries[-1][1])
            else:
                before = ""
                after = ""

            item_keys = [_decode(item_key) for item_key, _ in entries]
            payloads = []
            if item_keys:
                with r.pipeline(transaction=False) as pipe:
                    for item_key in item_keys:
                        pipe.hget(item_key, "data")
                    payloads = pipe.execute(raise_on_error=False)

        items = []
        for item_key, payload in zip(item_keys, payloads):
            if isinstance(payload, Exception):
                logging.warning(
                    " ---> ~FRTimeline: couldn't fetch %s in %s: %s" % (item_key, self.channel, payload)
                )
                continue
            if payload is None:
                logging.warning(" ---> ~FRTimeline: %s in %s has no stored record" % (item_key, self.channel))
                continue
            try:
                item = Item.from_json(payload)
            except (TypeError, ValueError) as e:
                logging.warning(
                    " ---> ~FRTimeline: couldn't decode %s in %s: %s" % (item_key, self.channel, e)
                )
                continue
            item.read = False
            items.append(item)

        return Timeline(items, before=before, after=after)

    def add_item(self, item):
        """Store an item and index it as unread, unless the channel already read it.

        Re-adding an item overwrites its record and moves it to the score of
        its current publication time. An item whose publication time does not
        parse is stored, remembered as unindexed, and TimelineTimeFormatError
        is raised. The caller's item is left untouched; a missing publication
        time is filled in on a copy.
        """
        if not item.published:
            item = Item(item.id, published=now_published(), read=item.read, data=item.data)

        try:
            data = item.to_json()
        except (TypeError, ValueError) as e:
            logging.error(" ---> ~FRTimeline: error while creating item %s for redis: %s" % (item.id, e))
            raise

        item_key = self.item_key(item.id)
        record = {
            "id": item.id,
            "published": item.published,
            "read": int(item.read),
            "data": data,
        }

        with self._get_redis() as r:
            with r.pipeline() as pipe:
                pipe.watch(self.read_key)

                if pipe.sismember(self.read_key, item_key):
                    pipe.multi()
                    pipe.hset(item_key, mapping=record)
                    pipe.execute()
                    logging.debug(
                        " ---> ~FBTimeline: %s already read in %s, not indexing" % (item_key, self.channel)
                    )
                    return

                try:
                    score = published_score(item.published)
                except TimelineTimeFormatError:
                    pipe.multi()
                    pipe.hset(item_key, mapping=record)
                    pipe.sadd(self.unindexed_key, item_key)
                    pipe.execute()
                    logging.warning(
                        " ---> ~FRTimeline: stored %s in %s without indexing, bad published time %r"
                        % (item_key, self.channel, item.published)
                    )
                    raise

                pipe.multi()
                pipe.hset(item_key, mapping=record)
                pipe.zadd(self.posts_key, {item_key: score})
                pipe.srem(self.unindexed_key, item_key)
                pipe.execute()

        self._send_item_added(item)

    def _send_item_added(self, item):
        responses = item_added.send_robust(sender=self.__class__, channel=self.channel, item=item)
        for receiver, response in responses:
            if isinstance(response, Exception):
                logging.error(
                    " ---> ~FRTimeline: item_added receiver %s failed for %s: %s"
                    % (receiver, item.id, response)
                )

    def count(self):
        with self._get_redis() as r:
            try:
                return r.zcard(self.posts_key)
            except redis.RedisError as e:
                raise TimelineBackendError(
                    "while updating channel unread count for %s: %s" % (self.channel, e)
                ) from e

    def _in_channel(self, r, item_key):
        return r.zscore(self.posts_key, item_key) is not None or r.sismember(self.read_key, item_key)

    def mark_read(self, uid):
        """Drop an item from the unread index and remember it as read.

        Only items indexed or already read in this channel qualify. The read
        flag lives on the item record, which every channel shares.
        """
        item_key = self.item_key(uid)
        with self._get_redis() as r:
            if not self._in_channel(r, item_key):
                raise TimelineItemNotFound("no item %s to mark read in %s" % (uid, self.channel))

            with r.pipeline() as pipe:
                pipe.hset(item_key, "read", 1)
                pipe.zrem(self.posts_key, item_key)
                pipe.sadd(self.read_key, item_key)
                pipe.execute()

        logging.debug(" ---> ~FBTimeline: marked %s read in %s" % (item_key, self.channel))

    def mark_unread(self, uid):
        """Put a read item back into the unread index at its publication score."""
        item_key = self.item_key(uid)
        with self._get_redis() as r:
            published = r.hget(item_key, "published")
            if published is None or not self._in_channel(r, item_key):
                raise TimelineItemNotFound("no item %s to mark unread in %s" % (uid, self.channel))
            score = published_score(published)

            with r.pipeline() as pipe:
                pipe.hset(item_key, "read", 0)
                pipe.srem(self.read_key, item_key)
                pipe.zadd(self.posts_key, {item_key: score})
                pipe.execute()

        logging.debug(" ---> ~FBTimeline: marked %s unread in %s" % (item_key, self.channel))

    def reconcile(self):
        """Repair what partial writes or outside deletions left behind.

        Drops index entries whose record no longer exists, and forgets
        unindexed items that have since been indexed, marked read or removed.
        Unindexed items still waiting on a parseable publication time stay.
        """
        stats = {
            "dangling_removed": 0,
            "orphans_cleared": 0,
            "orphans_remaining": 0,
        }

        with self._get_redis() as r:
            item_keys = [_decode(item_key) for item_key, _ in r.zscan_iter(self.posts_key)]
            if item_keys:
                with r.pipeline(transaction=False) as pipe:
                    for item_key in item_keys:
                        pipe.exists(item_key)
                    exists = pipe.execute()
                dangling = [item_key for item_key, found in zip(item_keys, exists) if not found]
                if dangling:
                    r.zrem(self.posts_key, *dangling)
                    stats["dangling_removed"] = len(dangling)

            orphans = [_decode(item_key) for item_key in r.smembers(self.unindexed_key)]
            if orphans:
                with r.pipeline(transaction=False) as pipe:
                    for item_key in orphans:
                        pipe.exists(item_key)
                        pipe.zscore(self.posts_key, item_key)
                        pipe.sismember(self.read_key, item_key)
                    results = pipe.execute()

                cleared = []
                for i, item_key in enumerate(orphans):
                    found, score, is_read = results[i * 3 : i * 3 + 3]
                    if not found or score is not None or is_read:
                        cleared.append(item_key)
                if cleared:
                    r.srem(self.unindexed_key, *cleared)
                stats["orphans_cleared"] = len(cleared)
                stats["orphans_remaining"] = len(orphans) - len(cleared)

        logging.info(
            " ---> ~FBTimeline: reconciled %s: ~SB%s~SN dangling removed, "
            "~SB%s~SN orphans cleared, ~SB%s~SN remaining"
            % (self.channel, stats["dangling_removed"], stats["orphans_cleared"], stats["orphans_remaining"])
        )
        return stats


class RStreamTimeline(TimelineBackend):
    """Append-only log variant. Only count() is available; it always reports 0."""

    timeline_type = TimelineType.STREAM

    def count(self):
        return 0


TIMELINE_BACKENDS = {
    TimelineType.SORTED_SET: RSortedSetTimeline,
    TimelineType.STREAM: RStreamTimeline,
}


def timeline_type_for_channel(channel):
    configured = settings.TIMELINE_CHANNEL_TYPES.get(channel, settings.TIMELINE_DEFAULT_TYPE)
    try:
        return TimelineType(configured)
    except ValueError as e:
        raise UnknownTimelineType("unknown timeline type %r for channel %s" % (configured, channel)) from e


def get_timeline(channel, connection_pool=None):
    timeline_type = timeline_type_for_channel(channel)
    return TIMELINE_BACKENDS[timeline_type](channel, connection_pool=connection_pool)
