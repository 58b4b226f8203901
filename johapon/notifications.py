"""KakaoTalk AlimTalk notifications with SMS fallback.

Messages go through the union's messaging proxy, which tries AlimTalk first
and falls back to SMS/LMS when the recipient can't receive it. The proxy
returns one result per recipient:

    {"results": [{"phoneNumber": "01012345678", "result_code": "0", "msg_type": "AT"}]}

- result_code "0" or "1" is a delivery, anything else a failure
- msg_type "AT" was delivered as AlimTalk, "SM"/"LM" as SMS/LMS fallback

Large sends are split into fixed-size batches processed one after another.
"""

import logging
import os
from collections.abc import Callable
from typing import Literal
from uuid import UUID

import httpx
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import ExternalServiceError
from .models import AlimtalkLog
from .schemas import AlimtalkRecipient, AlimtalkSendRequest, AlimtalkSendResult

logger = logging.getLogger(__name__)

ALIMTALK_PROXY_URL = os.getenv("ALIMTALK_PROXY_URL", "")
ALIMTALK_SENDER_KEY = os.getenv("ALIMTALK_SENDER_KEY", "")
ALIMTALK_BATCH_SIZE = int(os.getenv("ALIMTALK_BATCH_SIZE", "100"))

# KRW per delivered message
KAKAO_UNIT_COST = 15
SMS_UNIT_COST = 20

SUCCESS_CODES = {"0", "1"}
KAKAO_TYPES = {"AT"}
SMS_TYPES = {"SM", "LM"}

# (batch_index, total_batches, success_so_far, fail_so_far)
ProgressCallback = Callable[[int, int, int, int], None]


class RecipientResult(BaseModel):
    """Delivery outcome for one phone number."""

    phone_number: str
    success: bool
    channel: Literal["kakao", "sms", None] = None
    result_code: str | None = None
    error: str | None = None


class BatchResult(BaseModel):
    batch_index: int
    success_count: int = 0
    fail_count: int = 0
    kakao_count: int = 0
    sms_count: int = 0
    error: str | None = None


def parse_recipient_result(phone_number: str, raw: dict) -> RecipientResult:
    """Interpret one per-recipient entry of the proxy response."""
    code = str(raw.get("result_code", "")).strip()
    msg_type = str(raw.get("msg_type", "")).strip().upper()
    if code not in SUCCESS_CODES:
        return RecipientResult(
            phone_number=phone_number,
            success=False,
            result_code=code or None,
            error=raw.get("message"),
        )
    if msg_type in KAKAO_TYPES:
        channel = "kakao"
    elif msg_type in SMS_TYPES:
        channel = "sms"
    else:
        return RecipientResult(
            phone_number=phone_number,
            success=False,
            result_code=code,
            error=f"Unknown message type: {msg_type or 'missing'}",
        )
    return RecipientResult(phone_number=phone_number, success=True, channel=channel, result_code=code)


def chunk(items: list, size: int) -> list[list]:
    """Split into consecutive lists of at most `size` items."""
    if size <= 0:
        raise ValueError("batch size must be positive")
    return [items[i:i + size] for i in range(0, len(items), size)]


def estimate_cost(
    kakao_count: int,
    sms_count: int,
    kakao_unit_cost: int = KAKAO_UNIT_COST,
    sms_unit_cost: int = SMS_UNIT_COST,
) -> int:
    return kakao_count * kakao_unit_cost + sms_count * sms_unit_cost


class AlimtalkClient:
    """HTTP client for the messaging proxy.

    With no proxy URL configured the client runs dry: messages are logged and
    reported as delivered over AlimTalk.
    """

    def __init__(
        self,
        base_url: str | None = None,
        sender_key: str | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = (ALIMTALK_PROXY_URL if base_url is None else base_url).rstrip("/")
        self.sender_key = ALIMTALK_SENDER_KEY if sender_key is None else sender_key
        self.timeout = timeout
        self.transport = transport

    @property
    def dry_run(self) -> bool:
        return not self.base_url

    def send(
        self,
        template_code: str,
        recipients: list[AlimtalkRecipient],
        sender_key: str | None = None,
    ) -> list[RecipientResult]:
        """Send one batch.

        Raises httpx.HTTPError when the proxy call fails and
        ExternalServiceError when its reply can't be read.
        """
        if self.dry_run:
            for r in recipients:
                logger.info(f"[dry-run] AlimTalk {template_code} -> {r.name} ({r.phone_number}) {r.variables}")
            return [
                RecipientResult(phone_number=r.phone_number, success=True, channel="kakao", result_code="0")
                for r in recipients
            ]

        body = {
            "templateCode": template_code,
            "senderKey": sender_key or self.sender_key,
            "recipients": [
                {"phoneNumber": r.phone_number, "name": r.name, "variables": r.variables}
                for r in recipients
            ],
        }
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            response = client.post(f"{self.base_url}/send", json=body)
            response.raise_for_status()
            try:
                payload = response.json()
            except ValueError as e:
                raise ExternalServiceError(f"Messaging proxy returned invalid JSON: {e}") from e

        items = payload.get("results") if isinstance(payload, dict) else None
        if not isinstance(items, list):
            raise ExternalServiceError("Messaging proxy response has no results list")
        by_phone = {
            str(item.get("phoneNumber", "")).replace("-", ""): item
            for item in items
            if isinstance(item, dict)
        }
        return [
            parse_recipient_result(r.phone_number, by_phone[r.phone_number])
            if r.phone_number in by_phone
            else RecipientResult(phone_number=r.phone_number, success=False, error="No result from provider")
            for r in recipients
        ]


class SendProgress(BaseModel):
    """Progress of a running bulk send, updated by the progress callback."""

    current_batch: int = 0
    total_batches: int = 0
    success_count: int = 0
    fail_count: int = 0
    history: list[tuple[int, int]] = Field(default_factory=list)

    def update(self, batch_index: int, total_batches: int, success: int, fail: int) -> None:
        self.current_batch = batch_index + 1
        self.total_batches = total_batches
        self.success_count = success
        self.fail_count = fail
        self.history.append((success, fail))

    @property
    def is_complete(self) -> bool:
        return self.total_batches > 0 and self.current_batch == self.total_batches


def send_bulk(
    client: AlimtalkClient,
    template_code: str,
    recipients: list[AlimtalkRecipient],
    batch_size: int = ALIMTALK_BATCH_SIZE,
    on_progress: ProgressCallback | None = None,
    sender_key: str | None = None,
) -> list[BatchResult]:
    """Send in sequential batches, reporting progress after each.

    A failed batch counts all its recipients as failures and the next batch
    is still sent.
    """
    batches = chunk(recipients, batch_size)
    results = []
    progress = SendProgress()

    for index, batch in enumerate(batches):
        outcome = BatchResult(batch_index=index)
        try:
            for r in client.send(template_code, batch, sender_key=sender_key):
                if not r.success:
                    outcome.fail_count += 1
                elif r.channel == "sms":
                    outcome.sms_count += 1
                    outcome.success_count += 1
                else:
                    outcome.kakao_count += 1
                    outcome.success_count += 1
        except (httpx.HTTPError, ExternalServiceError) as e:
            logger.error(f"AlimTalk batch {index + 1}/{len(batches)} failed: {e}")
            outcome.fail_count = len(batch)
            outcome.error = str(e)

        results.append(outcome)
        progress.update(
            index,
            len(batches),
            progress.success_count + outcome.success_count,
            progress.fail_count + outcome.fail_count,
        )
        logger.info(
            f"AlimTalk batch {progress.current_batch}/{progress.total_batches}: "
            f"{progress.success_count} sent, {progress.fail_count} failed"
        )
        if on_progress:
            on_progress(index, len(batches), progress.success_count, progress.fail_count)

    return results


def send_alimtalk(
    db: Session,
    request: AlimtalkSendRequest,
    client: AlimtalkClient | None = None,
    batch_size: int = ALIMTALK_BATCH_SIZE,
    on_progress: ProgressCallback | None = None,
    kakao_unit_cost: int = KAKAO_UNIT_COST,
    sms_unit_cost: int = SMS_UNIT_COST,
) -> AlimtalkSendResult:
    """Send a template to every recipient and record the send in alimtalk_logs."""
    client = client or AlimtalkClient()
    batches = send_bulk(
        client,
        request.template_code,
        request.recipients,
        batch_size=batch_size,
        on_progress=on_progress,
    )

    success_count = sum(b.success_count for b in batches)
    fail_count = sum(b.fail_count for b in batches)
    kakao_count = sum(b.kakao_count for b in batches)
    sms_count = sum(b.sms_count for b in batches)
    cost = estimate_cost(kakao_count, sms_count, kakao_unit_cost, sms_unit_cost)
    errors = [b.error for b in batches if b.error]

    log = AlimtalkLog(
        union_id=request.union_id,
        sender_id=request.sender_id,
        template_code=request.template_code,
        template_name=request.template_name,
        recipient_count=len(request.recipients),
        success_count=success_count,
        fail_count=fail_count,
        kakao_success_count=kakao_count,
        sms_success_count=sms_count,
        estimated_cost=cost,
    )
    try:
        db.add(log)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to write alimtalk log for {request.template_code}: {e}")

    logger.info(
        f"AlimTalk {request.template_code}: {success_count} sent "
        f"({kakao_count} kakao, {sms_count} sms), {fail_count} failed"
    )

    return AlimtalkSendResult(
        success=success_count > 0 and not errors,
        recipient_count=len(request.recipients),
        success_count=success_count,
        fail_count=fail_count,
        kakao_count=kakao_count,
        sms_count=sms_count,
        estimated_cost=cost,
        error="; ".join(errors) if errors else None,
    )


def notify_user(
    db: Session,
    template_code: str,
    phone_number: str | None,
    name: str,
    variables: dict[str, str],
    union_id: UUID | None = None,
    client: AlimtalkClient | None = None,
) -> bool:
    """Best-effort single message. Returns False instead of raising."""
    if not phone_number:
        logger.warning(f"Skipping {template_code} for {name}: no phone number")
        return False
    request = AlimtalkSendRequest(
        union_id=union_id,
        template_code=template_code,
        recipients=[AlimtalkRecipient(phone_number=phone_number, name=name, variables=variables)],
    )
    result = send_alimtalk(db, request, client=client)
    if not result.success:
        logger.warning(f"{template_code} to {name} not delivered: {result.error}")
    return result.success

