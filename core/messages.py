"""
Message catalog — every text QueueWatch sends to a subscriber.

Two locales are bundled: Thai ("th", the production default) and English
("en"). Templates use str.format placeholders.
"""
from __future__ import annotations

from typing import Optional

from core.classifier import classify, remaining
from core.counter import parse_queue_number, resolve_counter
from models.schemas import Transition

MESSAGES: dict[str, dict[str, str]] = {
    "th": {
        "notify_current": "🎯 ถึงคิวแล้ว! คิว {number} เชิญที่เคาน์เตอร์ {counter}",
        "notify_near": "⚠️ ใกล้ถึงแล้ว! คิว {number} (เหลือ {remaining} คิว)",
        "notify_passed": "🚫 คิว {number} ผ่านไปแล้ว (คิวล่าสุด: {latest})",
        "status_invalid": "❌ รูปแบบเลขคิวไม่ถูกต้อง",
        "status_no_data": "❓ ยังไม่มีข้อมูลสำหรับเคาน์เตอร์ {counter}",
        "status_passed": "🚫 คิวผ่านไปแล้ว! (คิวล่าสุด: {latest})",
        "status_current": "🎯 ถึงคิวแล้ว! เชิญที่เคาน์เตอร์ {counter}",
        "status_near": "⚠️ ใกล้ถึงแล้ว! (เหลือ {remaining} คิว)",
        "status_waiting": "⏳ รออีก {remaining} คิว",
        "status_header": "📊 สถานะคิว {number}\n{status}",
        "not_tracking": "❓ ยังไม่ได้ติดตามคิวใดๆ",
        "registered": "✅ ลงทะเบียนสำเร็จ!\n\nคิวที่ติดตาม: {number}\n🔔 จะแจ้งเตือนเมื่อเหลือ {threshold} คิว",
        "conflict": (
            "ขออภัยค่ะ 🙏\n\nคิวหมายเลข {number} มีผู้ใช้งานอื่นติดตามอยู่แล้ว (\"{name}\")\n\n"
            "กรุณาตรวจสอบหมายเลขคิวของคุณอีกครั้งค่ะ"
        ),
        "register_error": "เกิดข้อผิดพลาดในการตรวจสอบคิว",
        "stopped": "❌ หยุดติดตามคิวแล้ว",
        "help": "🏢 ระบบแจ้งเตือนคิว\n\nพิมพ์เลขคิว 4-5 หลัก เพื่อเริ่มใช้งาน",
        "welcome": "🎉 ยินดีต้อนรับ!\n\nสวัสดีคุณ {name}\n\nเพียงพิมพ์เลขคิว 4-5 หลัก เพื่อเริ่มรับการแจ้งเตือน",
        "unknown_name": "ไม่ระบุชื่อ",
        "default_name": "ผู้ใช้",
    },
    "en": {
        "notify_current": "🎯 It's your turn! Ticket {number}, please go to counter {counter}",
        "notify_near": "⚠️ Almost there! Ticket {number} ({remaining} to go)",
        "notify_passed": "🚫 Ticket {number} has been passed (latest called: {latest})",
        "status_invalid": "❌ Invalid ticket number",
        "status_no_data": "❓ No data yet for counter {counter}",
        "status_passed": "🚫 Your ticket has been passed! (latest called: {latest})",
        "status_current": "🎯 It's your turn! Please go to counter {counter}",
        "status_near": "⚠️ Almost there! ({remaining} to go)",
        "status_waiting": "⏳ {remaining} tickets ahead of you",
        "status_header": "📊 Status for ticket {number}\n{status}",
        "not_tracking": "❓ You are not tracking any ticket",
        "registered": "✅ Registered!\n\nTracking ticket: {number}\n🔔 You'll be notified when {threshold} remain",
        "conflict": (
            "Sorry 🙏\n\nTicket {number} is already tracked by another user (\"{name}\")\n\n"
            "Please double-check your ticket number."
        ),
        "register_error": "Something went wrong while checking your ticket",
        "stopped": "❌ Stopped tracking your ticket",
        "help": "🏢 Queue notifications\n\nSend your 4-5 digit ticket number to start",
        "welcome": "🎉 Welcome!\n\nHello {name}\n\nJust send your 4-5 digit ticket number to get notified",
        "unknown_name": "Unknown",
        "default_name": "there",
    },
}


def text(locale: str, key: str, **params) -> str:
    catalog = MESSAGES.get(locale, MESSAGES["th"])
    return catalog[key].format(**params)


def format_notification(
    locale: str,
    transition: Transition,
    number: str,
    counter_id: int,
    latest_called: int,
) -> str:
    """Render the push message for a classified transition."""
    if transition == Transition.NONE:
        raise ValueError("No notification text for Transition.NONE")
    tracked = parse_queue_number(number)
    return text(
        locale,
        f"notify_{transition.value}",
        number=number,
        counter=counter_id,
        latest=latest_called,
        remaining=remaining(tracked, latest_called) if tracked is not None else "?",
    )


def describe_status(
    locale: str,
    number: str,
    latest_called: Optional[int],
    near_threshold: int,
) -> str:
    """Human-readable status line for the on-demand status command."""
    counter_id = resolve_counter(number)
    if counter_id is None:
        return text(locale, "status_invalid")
    if latest_called is None:
        return text(locale, "status_no_data", counter=counter_id)

    tracked = parse_queue_number(number)
    transition = classify(tracked, latest_called, near_threshold)
    ahead = remaining(tracked, latest_called)
    if transition == Transition.PASSED:
        return text(locale, "status_passed", latest=latest_called)
    if transition == Transition.CURRENT:
        return text(locale, "status_current", counter=counter_id)
    if transition == Transition.NEAR:
        return text(locale, "status_near", remaining=ahead)
    return text(locale, "status_waiting", remaining=ahead)
