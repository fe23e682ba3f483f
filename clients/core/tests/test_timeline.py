from datetime import date, datetime, timedelta, timezone

from quickchat import timeline
from quickchat.models import Message, MessageStatus

BASE = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


def _msg(msg_id, minutes=0, *, at=None, local_id=None, status=MessageStatus.CONFIRMED):
    return Message(
        conversation_id="c1",
        sender_id="u1",
        text=f"text {msg_id or local_id}",
        created_at=at or BASE + timedelta(minutes=minutes),
        id=msg_id,
        status=status,
        local_id=local_id,
    )


def test_merge_is_idempotent_and_ordered():
    current = [_msg("m1", 0), _msg("m3", 10)]
    incoming = [_msg("m2", 5), _msg("m3", 10)]

    merged = timeline.merge_messages(current, incoming)
    assert [m.id for m in merged] == ["m1", "m2", "m3"]
    assert timeline.merge_messages(merged, incoming) == merged


def test_merge_keeps_arrival_order_for_equal_timestamps():
    merged = timeline.merge_messages([_msg("b", 0)], [_msg("a", 0), _msg("c", 0)])
    assert [m.id for m in merged] == ["b", "a", "c"]


def test_merge_ignores_messages_without_id():
    merged = timeline.merge_messages([], [_msg(None, 0, local_id="x")])
    assert merged == []


def test_reconcile_replaces_pending_in_place():
    pending = _msg(None, 5, local_id="l1", status=MessageStatus.PENDING)
    current = timeline.insert_pending([_msg("m1", 0)], pending)
    confirmed = _msg("m2", 6)

    result = timeline.reconcile(current, "l1", confirmed)

    assert [m.id for m in result] == ["m1", "m2"]
    assert result[1].local_id == "l1"
    assert result[1].status is MessageStatus.CONFIRMED


def test_reconcile_after_feed_delivered_confirmed_copy():
    pending = _msg(None, 5, local_id="l1", status=MessageStatus.PENDING)
    current = timeline.merge_messages(timeline.insert_pending([], pending), [_msg("m2", 6)])

    result = timeline.reconcile(current, "l1", _msg("m2", 6))

    assert [m.id for m in result] == ["m2"]


def test_mark_failed_and_discard_only_touch_unconfirmed_entry():
    pending = _msg(None, 5, local_id="l1", status=MessageStatus.PENDING)
    current = timeline.insert_pending([_msg("m1", 0)], pending)

    failed = timeline.mark_failed(current, "l1")
    assert failed[1].status is MessageStatus.FAILED
    assert failed[0].status is MessageStatus.CONFIRMED

    assert [m.id for m in timeline.discard_local(failed, "l1")] == ["m1"]


def test_snapshot_differs_compares_confirmed_ids():
    current = [_msg("m1", 0), _msg(None, 1, local_id="l1", status=MessageStatus.PENDING)]
    assert not timeline.snapshot_differs(current, [_msg("m1", 0)])
    assert timeline.snapshot_differs(current, [_msg("m1", 0), _msg("m2", 1)])
    assert timeline.snapshot_differs(current, [_msg("m9", 0)])


def test_date_header_flags_follow_calendar_days():
    day_change = [
        _msg("a", at=datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)),
        _msg("b", at=datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc)),
    ]
    same_day = [
        _msg("a", at=datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)),
        _msg("b", at=datetime(2024, 1, 1, 11, 0, tzinfo=timezone.utc)),
    ]

    assert timeline.date_header_flags(day_change, timezone.utc) == [True, True]
    assert timeline.date_header_flags(same_day, timezone.utc) == [True, False]
    assert timeline.date_header_flags([], timezone.utc) == []


def test_date_header_uses_local_timezone():
    plus_ten = timezone(timedelta(hours=10))
    messages = [
        _msg("a", at=datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)),
        _msg("b", at=datetime(2024, 1, 1, 15, 0, tzinfo=timezone.utc)),
    ]
    assert timeline.date_header_flags(messages, plus_ten) == [True, True]


def test_format_time_twelve_hour_clock():
    assert timeline.format_time(datetime(2024, 1, 1, 0, 5, tzinfo=timezone.utc), timezone.utc) == "12:05 AM"
    assert timeline.format_time(datetime(2024, 1, 1, 13, 30, tzinfo=timezone.utc), timezone.utc) == "1:30 PM"
    assert timeline.format_time(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc), timezone.utc) == "12:00 PM"


def test_format_day_relative_labels():
    today = date(2024, 3, 15)
    assert timeline.format_day(datetime(2024, 3, 15, 8, tzinfo=timezone.utc), today=today, tz=timezone.utc) == "Today"
    assert (
        timeline.format_day(datetime(2024, 3, 14, 8, tzinfo=timezone.utc), today=today, tz=timezone.utc)
        == "Yesterday"
    )
    assert (
        timeline.format_day(datetime(2024, 1, 1, 8, tzinfo=timezone.utc), today=today, tz=timezone.utc)
        == "Monday, January 1, 2024"
    )


def test_is_own():
    message = _msg("m1")
    assert timeline.is_own(message, "u1")
    assert not timeline.is_own(message, "u2")
