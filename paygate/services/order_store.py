"""
订单存储：创建订单、读取订单快照、支付状态流转。

状态：0 待支付，1 已支付，2 失败 / 关闭。
已支付状态只允许从待支付转换一次，重复通知不会重复触发结算。
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from paygate.database import get_db
from paygate.models.schemas import Order

logger = logging.getLogger(__name__)

STATUS_PENDING = 0
STATUS_PAID = 1
STATUS_FAILED = 2


class OrderCreateError(Exception):
    """订单创建失败。"""
    pass


@dataclass(frozen=True)
class OrderRecord:
    """订单快照及其存储状态。"""
    order: Order
    channel_id: int
    status: int = STATUS_PENDING
    buyer: str = ""
    paid_at: str | None = None
    refunded_at: str | None = None

    @property
    def paid(self) -> bool:
        return self.status == STATUS_PAID

    @property
    def refunded(self) -> bool:
        return self.refunded_at is not None


def _now() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


class OrderStore:
    """订单服务：创建、查询、标记支付 / 退款。"""

    def generate_trade_no(self) -> str:
        """
        生成唯一平台订单号：时间戳 + 随机数。
        格式：YYYYMMDDHHMMSSffffff + 6位随机数字。
        """
        db = get_db()
        try:
            for _ in range(10):
                trade_no = datetime.now().strftime("%Y%m%d%H%M%S%f") + f"{random.randint(0, 999999):06d}"
                row = db.execute(
                    "SELECT 1 FROM orders WHERE trade_no = ?", (trade_no,)
                ).fetchone()
                if not row:
                    return trade_no
            raise OrderCreateError("无法生成唯一订单号，请重试")
        finally:
            db.close()

    def create_order(self, channel_id: int, money, name: str, typename: str = "alipay",
                     notify_url: str = "", return_url: str = "", clientip: str = "",
                     openid: str = "", trade_no: str | None = None) -> str:
        """
        创建待支付订单，返回平台订单号。

        Raises:
            OrderCreateError: 金额非法或订单号重复。
        """
        amount = Decimal(str(money)).quantize(Decimal("0.01"))
        if amount <= 0:
            raise OrderCreateError("订单金额必须大于 0")
        trade_no = trade_no or self.generate_trade_no()

        db = get_db()
        try:
            db.execute(
                """INSERT INTO orders (trade_no, channel_id, type, name, money,
                                       notify_url, return_url, clientip, openid,
                                       status, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (trade_no, channel_id, typename, name, str(amount), notify_url,
                 return_url, clientip, openid, STATUS_PENDING, _now()),
            )
            db.commit()
        except Exception as e:
            db.rollback()
            if "UNIQUE constraint failed" in str(e):
                raise OrderCreateError(f"订单号 '{trade_no}' 已存在") from e
            raise
        finally:
            db.close()

        logger.info("订单创建成功: trade_no=%s, channel_id=%s, money=%s", trade_no, channel_id, amount)
        return trade_no

    def get_order(self, trade_no: str) -> OrderRecord | None:
        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM orders WHERE trade_no = ?", (trade_no,)
            ).fetchone()
        finally:
            db.close()
        if not row:
            return None

        order = Order(
            trade_no=row["trade_no"],
            amount=Decimal(str(row["money"])).quantize(Decimal("0.01")),
            name=row["name"] or "",
            notify_url=row["notify_url"] or "",
            return_url=row["return_url"] or "",
            client_ip=row["clientip"] or "",
            typename=row["type"] or "alipay",
            openid=row["openid"] or "",
            api_trade_no=row["api_trade_no"] or "",
            refund_no=row["refund_no"] or "",
            refund_amount=(Decimal(str(row["refund_money"]))
                           if row["refund_money"] is not None else None),
        )
        return OrderRecord(
            order=order,
            channel_id=row["channel_id"],
            status=row["status"],
            buyer=row["buyer"] or "",
            paid_at=row["paid_at"],
            refunded_at=row["refunded_at"],
        )

    def mark_paid(self, trade_no: str, api_trade_no: str = "", buyer: str = "") -> bool:
        """
        待支付 → 已支付，条件更新保证只成功一次。

        Returns:
            True 表示本次调用完成了状态转换；订单已支付或不存在时返回 False。
        """
        db = get_db()
        try:
            cursor = db.execute(
                """UPDATE orders SET status = ?, api_trade_no = ?, buyer = ?, paid_at = ?
                   WHERE trade_no = ? AND status = ?""",
                (STATUS_PAID, api_trade_no or None, buyer or None, _now(),
                 trade_no, STATUS_PENDING),
            )
            db.commit()
            changed = cursor.rowcount == 1
        finally:
            db.close()

        if changed:
            logger.info("订单已支付: trade_no=%s, api_trade_no=%s", trade_no, api_trade_no)
        return changed

    def mark_failed(self, trade_no: str) -> bool:
        db = get_db()
        try:
            cursor = db.execute(
                "UPDATE orders SET status = ? WHERE trade_no = ? AND status = ?",
                (STATUS_FAILED, trade_no, STATUS_PENDING),
            )
            db.commit()
            return cursor.rowcount == 1
        finally:
            db.close()

    def set_refund(self, trade_no: str, refund_no: str, refund_money) -> None:
        """记录退款申请的退款单号和金额，供插件发起退款时读取。"""
        db = get_db()
        try:
            db.execute(
                "UPDATE orders SET refund_no = ?, refund_money = ? WHERE trade_no = ?",
                (refund_no, str(Decimal(str(refund_money)).quantize(Decimal("0.01"))), trade_no),
            )
            db.commit()
        finally:
            db.close()

    def mark_refunded(self, trade_no: str) -> bool:
        """
        记录退款完成时间，每笔订单只允许退款一次。

        Returns:
            True 表示本次调用完成了记录；订单已退款时返回 False。
        """
        db = get_db()
        try:
            cursor = db.execute(
                "UPDATE orders SET refunded_at = ? WHERE trade_no = ? AND refunded_at IS NULL",
                (_now(), trade_no),
            )
            db.commit()
            return cursor.rowcount == 1
        finally:
            db.close()
