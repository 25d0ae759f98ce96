"""支付路由端到端测试：发起支付、异步通知、同步跳转、对账与退款。"""

import os
import sqlite3
import tempfile
from unittest.mock import MagicMock, patch

import pytest
from Crypto.PublicKey import RSA
from fastapi.testclient import TestClient

# 在导入 paygate 模块之前设置测试数据库路径
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="pay_route_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name
os.environ["CONFIG_SECRET"] = "test-secret-key-for-pay-route"
os.environ["ADMIN_TOKEN"] = "test-admin-token"
os.environ["TESTING"] = "1"

import paygate.database as _db_mod
from paygate.database import get_db, init_db
from paygate.main import app
from paygate.services.channel_store import _encrypt
from paygate.services.order_store import STATUS_FAILED, STATUS_PAID, STATUS_PENDING
from paygate.services.sign import RSA2, canonicalize, generate_sign, sign

EPAY_CONFIG = {"appurl": "https://epay.example.com/", "appid": "1001", "appkey": "KEY"}
MERCHANT_RETURN = "https://merchant.example.com/return"
ADMIN_HEADERS = {"X-Admin-Token": "test-admin-token"}
PC_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/120"


def _generate_test_keypair():
    key = RSA.generate(2048)
    return key.export_key("PEM").decode("utf-8"), key.publickey().export_key("PEM").decode("utf-8")


APP_PRIVATE, _ = _generate_test_keypair()
ALIPAY_PRIVATE, ALIPAY_PUBLIC = _generate_test_keypair()


def _response(data):
    response = MagicMock()
    response.json.return_value = data
    return response


@pytest.fixture(autouse=True)
def _setup_db():
    """每个测试前重建数据库。"""
    os.environ["DB_PATH"] = _tmp.name
    _db_mod.DB_PATH = _tmp.name
    conn = sqlite3.connect(_tmp.name)
    conn.executescript("""
        DROP TABLE IF EXISTS orders;
        DROP TABLE IF EXISTS channels;
    """)
    conn.close()
    init_db()
    yield


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


def _create_order(plugin="epay", config=None, money="10.00"):
    state = app.state
    channel_id = state.channels.save_channel(plugin, plugin, config or EPAY_CONFIG)
    return state.orders.create_order(
        channel_id, money, "测试商品", typename="alipay",
        notify_url="https://merchant.example.com/notify", return_url=MERCHANT_RETURN,
    )


def _epay_notify_params(trade_no, money="10.00", key="KEY"):
    params = {
        "pid": "1001",
        "trade_no": "P987654",
        "out_trade_no": trade_no,
        "type": "alipay",
        "name": "测试商品",
        "money": money,
        "trade_status": "TRADE_SUCCESS",
    }
    params["sign"] = generate_sign(params, key)
    params["sign_type"] = "MD5"
    return params


def _status(trade_no):
    return app.state.orders.get_order(trade_no).status


class TestSubmit:

    def test_epay_form(self, client):
        trade_no = _create_order()
        resp = client.get(f"/pay/submit/{trade_no}")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/html")
        assert "https://epay.example.com/submit.php" in resp.text
        # 渠道回调地址指向本平台
        assert f"http://testserver/pay/notify/{trade_no}" in resp.text

    def test_site_url(self, client, monkeypatch):
        monkeypatch.setenv("SITE_URL", "https://gw.example.com")
        trade_no = _create_order()
        resp = client.get(f"/pay/submit/{trade_no}")
        assert f"https://gw.example.com/pay/return/{trade_no}" in resp.text

    def test_order_not_found(self, client):
        resp = client.get("/pay/submit/missing")
        assert resp.status_code == 404
        assert resp.json()["code"] == -1

    def test_already_paid(self, client):
        trade_no = _create_order()
        app.state.orders.mark_paid(trade_no, "P1")
        assert client.get(f"/pay/submit/{trade_no}").json()["msg"] == "订单已支付"

    def test_plugin_missing(self, client):
        db = get_db()
        try:
            cursor = db.execute(
                "INSERT INTO channels (plugin, name, config) VALUES (?, ?, ?)",
                ("gone", "已删除", _encrypt("{}")),
            )
            db.commit()
            channel_id = cursor.lastrowid
        finally:
            db.close()
        trade_no = app.state.orders.create_order(channel_id, "1.00", "x")
        assert client.get(f"/pay/submit/{trade_no}").json()["code"] == -2

    def test_incomplete_config_is_server_error(self, client):
        db = get_db()
        try:
            cursor = db.execute(
                "INSERT INTO channels (plugin, name, config) VALUES (?, ?, ?)",
                ("epay", "缺配置", _encrypt('{"appurl": "https://epay.example.com/"}')),
            )
            db.commit()
            channel_id = cursor.lastrowid
        finally:
            db.close()
        trade_no = app.state.orders.create_order(channel_id, "1.00", "x")
        resp = client.get(f"/pay/submit/{trade_no}")
        assert resp.status_code == 500
        assert resp.json() == {"code": -1, "msg": "支付通道配置错误"}

    def test_inactive_channel(self, client):
        trade_no = _create_order()
        channel_id = app.state.orders.get_order(trade_no).channel_id
        app.state.channels.set_active(channel_id, False)
        assert client.get(f"/pay/submit/{trade_no}").json()["msg"] == "支付通道不可用"


class TestPayMethod:

    def test_mapi_redirect(self, client):
        trade_no = _create_order()
        with patch.object(app.state.http, "post_form",
                          return_value=_response({"code": 1, "payurl": "https://epay.example.com/pay/x"})) as post:
            resp = client.get(f"/pay/wxpay/{trade_no}", follow_redirects=False)
        assert resp.status_code == 302
        assert resp.headers["location"] == "https://epay.example.com/pay/x"
        assert post.call_args.args[1]["type"] == "wxpay"

    def test_mapi_qrcode_json(self, client):
        trade_no = _create_order()
        with patch.object(app.state.http, "post_form",
                          return_value=_response({"code": 1, "qrcode": "weixin://wxpay/x"})):
            resp = client.get(f"/pay/wxpay/{trade_no}")
        assert resp.json() == {"code": 1, "type": "qrcode", "url": "weixin://wxpay/x", "page": "qrcode"}

    def test_mapi_error(self, client):
        trade_no = _create_order()
        with patch.object(app.state.http, "post_form",
                          return_value=_response({"code": -1, "msg": "通道维护中"})):
            resp = client.get(f"/pay/alipay/{trade_no}")
        assert resp.json() == {"code": -1, "msg": "通道维护中"}

    def test_unsupported_method(self, client):
        trade_no = _create_order()
        assert client.get(f"/pay/unionpay/{trade_no}").json()["code"] == -2

    def test_admin_operations_not_exposed(self, client):
        trade_no = _create_order()
        app.state.orders.mark_paid(trade_no, "P1")
        with patch.object(app.state.http, "post_form") as post_form:
            for method in ("refund", "close", "reconcile"):
                assert client.get(f"/pay/{method}/{trade_no}").json()["code"] == -2
        post_form.assert_not_called()


class TestNotify:

    def test_valid_marks_paid(self, client):
        trade_no = _create_order()
        resp = client.post(f"/pay/notify/{trade_no}", data=_epay_notify_params(trade_no))
        assert resp.status_code == 200
        assert resp.text == "success"
        assert resp.headers["content-type"].startswith("text/plain")

        record = app.state.orders.get_order(trade_no)
        assert record.status == STATUS_PAID
        assert record.order.api_trade_no == "P987654"

    def test_get_notify(self, client):
        trade_no = _create_order()
        resp = client.get(f"/pay/notify/{trade_no}", params=_epay_notify_params(trade_no))
        assert resp.text == "success"
        assert _status(trade_no) == STATUS_PAID

    def test_duplicate_notify_acknowledged_once(self, client):
        trade_no = _create_order()
        params = _epay_notify_params(trade_no)
        with patch.object(app.state.orders, "mark_paid", wraps=app.state.orders.mark_paid) as mark:
            first = client.post(f"/pay/notify/{trade_no}", data=params)
            second = client.post(f"/pay/notify/{trade_no}", data=params)
        assert first.text == second.text == "success"
        assert [c.args[0] for c in mark.call_args_list] == [trade_no, trade_no]
        assert _status(trade_no) == STATUS_PAID

    def test_bad_signature(self, client):
        trade_no = _create_order()
        resp = client.post(f"/pay/notify/{trade_no}", data=_epay_notify_params(trade_no, key="OTHER"))
        assert resp.text == "fail"
        assert _status(trade_no) == STATUS_PENDING

    def test_amount_mismatch(self, client):
        trade_no = _create_order()
        resp = client.post(f"/pay/notify/{trade_no}", data=_epay_notify_params(trade_no, money="10.02"))
        assert resp.text == "fail"
        assert _status(trade_no) == STATUS_PENDING

    def test_notify_for_other_order(self, client):
        trade_no = _create_order()
        other = _create_order()
        resp = client.post(f"/pay/notify/{trade_no}", data=_epay_notify_params(other))
        assert resp.text == "fail"
        assert _status(trade_no) == STATUS_PENDING
        assert _status(other) == STATUS_PENDING

    def test_unknown_order(self, client):
        resp = client.post("/pay/notify/missing", data={"a": "1"})
        assert resp.status_code == 404
        assert resp.text == "fail"

    def test_vmq_error_ack(self, client):
        trade_no = _create_order("vmq", {"appurl": "https://vmq.example.com/", "appid": "1", "appkey": "VKEY"})
        resp = client.get(f"/pay/notify/{trade_no}", params={"payId": trade_no, "sign": "bad"})
        assert resp.text == "error"


class TestReturn:

    def test_valid_redirects_without_marking_paid(self, client):
        trade_no = _create_order()
        resp = client.get(f"/pay/return/{trade_no}", params=_epay_notify_params(trade_no),
                          follow_redirects=False)
        assert resp.status_code == 302
        assert resp.headers["location"] == MERCHANT_RETURN
        assert _status(trade_no) == STATUS_PENDING

    def test_invalid(self, client):
        trade_no = _create_order()
        resp = client.get(f"/pay/return/{trade_no}", params=_epay_notify_params(trade_no, key="OTHER"))
        assert resp.json()["code"] == -1


class TestReconcile:

    def test_paid_by_query(self, client):
        trade_no = _create_order()
        with patch.object(app.state.http, "get", return_value=_response({
            "code": 1, "status": 1, "trade_no": "P1", "out_trade_no": trade_no, "money": "10.00",
        })):
            resp = client.get(f"/pay/query/{trade_no}")
        assert resp.json()["status"] == "paid"
        assert _status(trade_no) == STATUS_PAID

    def test_pending(self, client):
        trade_no = _create_order()
        with patch.object(app.state.http, "get", return_value=_response({
            "code": 1, "status": 0, "out_trade_no": trade_no, "money": "10.00",
        })):
            resp = client.get(f"/pay/query/{trade_no}")
        assert resp.json()["status"] == "pending"
        assert _status(trade_no) == STATUS_PENDING

    def test_not_supported(self, client):
        trade_no = _create_order("vmq", {"appurl": "https://vmq.example.com/", "appid": "1", "appkey": "VKEY"})
        assert client.get(f"/pay/query/{trade_no}").json()["code"] == -2


class TestAlipayEndToEnd:

    def _config(self):
        return {"appid": "2021000000000001", "appkey": ALIPAY_PUBLIC, "appsecret": APP_PRIVATE}

    def _notify(self, trade_no, amount="10.00"):
        params = {
            "app_id": "2021000000000001",
            "trade_no": "2024010122001400000000000001",
            "out_trade_no": trade_no,
            "total_amount": amount,
            "trade_status": "TRADE_SUCCESS",
            "buyer_id": "2088102177846880",
            "sign_type": "RSA2",
        }
        params["sign"] = sign(canonicalize(params, ("sign_type",)), ALIPAY_PRIVATE, RSA2)
        return params

    def test_pc_submit_qrcode(self, client):
        trade_no = _create_order("alipay", self._config())
        with patch.object(app.state.http, "post_form", return_value=_response({
            "alipay_trade_precreate_response": {"code": "10000", "qr_code": "https://qr.alipay.com/bax1"},
        })):
            resp = client.get(f"/pay/submit/{trade_no}", headers={"User-Agent": PC_UA})
        assert resp.json() == {
            "code": 1, "type": "qrcode", "url": "https://qr.alipay.com/bax1", "page": "alipay_qrcode",
        }

    def test_notify_twice(self, client):
        trade_no = _create_order("alipay", self._config())
        params = self._notify(trade_no)
        assert client.post(f"/pay/notify/{trade_no}", data=params).text == "success"
        assert client.post(f"/pay/notify/{trade_no}", data=params).text == "success"
        assert _status(trade_no) == STATUS_PAID

    def test_notify_amount_mismatch(self, client):
        trade_no = _create_order("alipay", self._config())
        resp = client.post(f"/pay/notify/{trade_no}", data=self._notify(trade_no, "10.02"))
        assert resp.text == "fail"
        assert _status(trade_no) == STATUS_PENDING


class TestRefund:

    def test_requires_token(self, client):
        trade_no = _create_order()
        assert client.post(f"/v1/api/order/refund/{trade_no}").status_code == 401
        resp = client.post(f"/v1/api/order/refund/{trade_no}", headers={"X-Admin-Token": "wrong"})
        assert resp.status_code == 401

    def test_unpaid(self, client):
        trade_no = _create_order()
        resp = client.post(f"/v1/api/order/refund/{trade_no}", headers=ADMIN_HEADERS)
        assert resp.json()["code"] == -1

    def test_full_refund(self, client):
        trade_no = _create_order()
        app.state.orders.mark_paid(trade_no, "P987654")
        with patch.object(app.state.http, "post_form", return_value=_response({"code": 0})) as post:
            resp = client.post(f"/v1/api/order/refund/{trade_no}", headers=ADMIN_HEADERS)
        data = resp.json()
        assert data["code"] == 1
        assert data["money"] == "10.00"
        sent = post.call_args.args[1]
        assert sent["trade_no"] == "P987654"
        assert sent["refund_no"] == data["refund_no"]

    def test_partial_refund(self, client):
        trade_no = _create_order()
        app.state.orders.mark_paid(trade_no, "P987654")
        with patch.object(app.state.http, "post_form", return_value=_response({"code": 0})) as post:
            resp = client.post(f"/v1/api/order/refund/{trade_no}", headers=ADMIN_HEADERS,
                               json={"money": "3.50", "refund_no": "R100"})
        assert resp.json()["refund_no"] == "R100"
        assert post.call_args.args[1]["money"] == "3.50"
        assert app.state.orders.get_order(trade_no).order.refund_no == "R100"

    def test_refund_exceeds_amount(self, client):
        trade_no = _create_order()
        app.state.orders.mark_paid(trade_no, "P987654")
        resp = client.post(f"/v1/api/order/refund/{trade_no}", headers=ADMIN_HEADERS,
                           json={"money": "20.00"})
        assert resp.json()["code"] == -1

    def test_provider_failure(self, client):
        trade_no = _create_order()
        app.state.orders.mark_paid(trade_no, "P987654")
        with patch.object(app.state.http, "post_form",
                          return_value=_response({"code": -1, "msg": "商户余额不足"})):
            resp = client.post(f"/v1/api/order/refund/{trade_no}", headers=ADMIN_HEADERS)
        assert resp.json() == {"code": -1, "msg": "商户余额不足"}

    def test_not_supported(self, client):
        trade_no = _create_order("vmq", {"appurl": "https://vmq.example.com/", "appid": "1", "appkey": "VKEY"})
        app.state.orders.mark_paid(trade_no, "P1")
        resp = client.post(f"/v1/api/order/refund/{trade_no}", headers=ADMIN_HEADERS)
        assert resp.json()["code"] == -2

    def test_second_refund_rejected(self, client):
        trade_no = _create_order()
        app.state.orders.mark_paid(trade_no, "P987654")
        with patch.object(app.state.http, "post_form", return_value=_response({"code": 0})) as post:
            first = client.post(f"/v1/api/order/refund/{trade_no}", headers=ADMIN_HEADERS,
                                json={"refund_no": "RA"})
            second = client.post(f"/v1/api/order/refund/{trade_no}", headers=ADMIN_HEADERS,
                                 json={"refund_no": "RB"})
        assert first.json()["code"] == 1
        assert second.json() == {"code": -1, "msg": "订单已退款"}
        assert post.call_count == 1
        assert app.state.orders.get_order(trade_no).order.refund_no == "RA"

    def test_retry_after_provider_failure(self, client):
        trade_no = _create_order()
        app.state.orders.mark_paid(trade_no, "P987654")
        with patch.object(app.state.http, "post_form",
                          return_value=_response({"code": -1, "msg": "商户余额不足"})):
            client.post(f"/v1/api/order/refund/{trade_no}", headers=ADMIN_HEADERS)
        assert app.state.orders.get_order(trade_no).refunded is False

        with patch.object(app.state.http, "post_form", return_value=_response({"code": 0})):
            resp = client.post(f"/v1/api/order/refund/{trade_no}", headers=ADMIN_HEADERS)
        assert resp.json()["code"] == 1
        assert app.state.orders.get_order(trade_no).refunded is True


class TestCloseOrder:

    def test_requires_token(self, client):
        trade_no = _create_order()
        assert client.post(f"/v1/api/order/close/{trade_no}").status_code == 401

    def test_close_without_provider_support(self, client):
        trade_no = _create_order()
        with patch.object(app.state.http, "post_form") as post:
            resp = client.post(f"/v1/api/order/close/{trade_no}", headers=ADMIN_HEADERS)
        assert resp.json()["code"] == 1
        post.assert_not_called()
        assert _status(trade_no) == STATUS_FAILED

    def test_alipay_close(self, client):
        trade_no = _create_order("alipay", TestAlipayEndToEnd()._config())
        with patch.object(app.state.http, "post_form", return_value=_response({
            "alipay_trade_close_response": {"code": "10000"},
        })) as post:
            resp = client.post(f"/v1/api/order/close/{trade_no}", headers=ADMIN_HEADERS)
        assert resp.json()["status_text"] == "已关闭"
        assert post.call_args.args[1]["method"] == "alipay.trade.close"
        assert _status(trade_no) == STATUS_FAILED

    def test_alipay_close_failure_keeps_pending(self, client):
        trade_no = _create_order("alipay", TestAlipayEndToEnd()._config())
        with patch.object(app.state.http, "post_form", return_value=_response({
            "alipay_trade_close_response": {"code": "40006", "sub_msg": "交易状态不合法"},
        })):
            resp = client.post(f"/v1/api/order/close/{trade_no}", headers=ADMIN_HEADERS)
        assert resp.json() == {"code": -1, "msg": "交易状态不合法"}
        assert _status(trade_no) == STATUS_PENDING

    def test_paid_order_cannot_be_closed(self, client):
        trade_no = _create_order()
        app.state.orders.mark_paid(trade_no, "P1")
        resp = client.post(f"/v1/api/order/close/{trade_no}", headers=ADMIN_HEADERS)
        assert resp.json()["code"] == -1
        assert _status(trade_no) == STATUS_PAID


class TestChannelActive:

    def test_deactivate_blocks_submit(self, client):
        trade_no = _create_order()
        channel_id = app.state.orders.get_order(trade_no).channel_id
        resp = client.post(f"/v1/api/channels/{channel_id}/active", headers=ADMIN_HEADERS,
                           json={"active": False})
        assert resp.json() == {"code": 1, "id": channel_id, "active": False}
        assert client.get(f"/pay/submit/{trade_no}").json() == {"code": -1, "msg": "支付通道不可用"}

        client.post(f"/v1/api/channels/{channel_id}/active", headers=ADMIN_HEADERS,
                    json={"active": True})
        assert client.get(f"/pay/submit/{trade_no}").status_code == 200
        assert "<form" in client.get(f"/pay/submit/{trade_no}").text

    def test_missing_channel(self, client):
        resp = client.post("/v1/api/channels/999/active", headers=ADMIN_HEADERS, json={"active": False})
        assert resp.json()["code"] == -1
