"""Per-channel timelines of feed items.

Stores incoming items per channel and serves them back as cursor-paginated,
time-ordered pages, tracking read/unread state. The backend variant for a
channel is chosen from settings; the sorted-set variant keeps each channel's
unread items in a Redis sorted set scored by publication time.
"""
