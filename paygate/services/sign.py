"""
签名生成与验证模块：参数规范化、MD5 / HMAC / RSA 签名与验签。

规范化规则（签名方与验签方必须完全一致）：
1. 过滤 sign / signature 及插件指定的排除字段
2. 过滤空值（None 或空字符串）
3. 按参数名码位顺序排序
4. 拼接 key=value，以 & 连接（参数值不 URL 编码）
对象 / 数组类型的值先序列化为紧凑 JSON。

部分渠道按固定字段顺序直接拼接参数值，见 concat_values()，
字段顺序由各插件自行声明。
"""

import base64
import hashlib
import hmac
import json
import secrets
import string

from Crypto.Hash import SHA1, SHA256
from Crypto.PublicKey import RSA
from Crypto.Signature import pkcs1_15

# 始终不参与签名的字段
SIGN_FIELDS = ("sign", "signature")

MD5 = "MD5"
MD5_KEY = "MD5_KEY"
HMAC_SHA256 = "HMAC-SHA256"
RSA2 = "RSA2"
RSA1 = "RSA"

_DIGEST_ALGORITHMS = (MD5, MD5_KEY, HMAC_SHA256)
_RSA_HASHES = {RSA2: SHA256, RSA1: SHA1}


class SignError(Exception):
    """签名失败（密钥格式错误、算法不支持等）。"""
    pass


def stringify(value) -> str:
    """把参数值转换为参与签名的字符串，dict / list 使用紧凑 JSON。"""
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def canonicalize(params: dict, exclude=()) -> str:
    """生成规范化待签名字符串，结果与参数的插入顺序无关。"""
    skipped = set(SIGN_FIELDS) | set(exclude)
    filtered = {
        k: stringify(v)
        for k, v in params.items()
        if k not in skipped and v is not None and stringify(v) != ""
    }
    return "&".join(f"{k}={filtered[k]}" for k in sorted(filtered))


def concat_values(params: dict, fields) -> str:
    """按给定字段顺序直接拼接参数值（无分隔符、无键名）。"""
    return "".join(
        stringify(params[f]) if params.get(f) is not None else ""
        for f in fields
    )


# ── 密钥处理 ──────────────────────────────────────────────


def wrap_pem(key_text: str, label: str) -> str:
    """
    为裸 Base64 密钥补全 PEM 头尾。

    已包含 PEM 标记的密钥原样返回；裸 Base64 中的空白和换行会被去掉，
    再按 64 字符折行。
    """
    key_text = (key_text or "").strip()
    if key_text.startswith("-----"):
        return key_text
    body = "".join(key_text.split())
    lines = [body[i:i + 64] for i in range(0, len(body), 64)]
    return f"-----BEGIN {label}-----\n" + "\n".join(lines) + f"\n-----END {label}-----"


def load_private_key(key_text: str) -> RSA.RsaKey:
    """加载 RSA 私钥，支持 PEM（PKCS#1 / PKCS#8）和裸 Base64。"""
    try:
        key = RSA.import_key(wrap_pem(key_text, "PRIVATE KEY"))
    except (ValueError, IndexError, TypeError) as e:
        raise SignError(f"无法加载私钥: {e}")
    if not key.has_private():
        raise SignError("无法加载私钥: 提供的是公钥")
    return key


def load_public_key(key_text: str) -> RSA.RsaKey:
    """加载 RSA 公钥，支持 PEM 和裸 Base64。"""
    try:
        return RSA.import_key(wrap_pem(key_text, "PUBLIC KEY"))
    except (ValueError, IndexError, TypeError) as e:
        raise SignError(f"无法加载公钥: {e}")


# ── 签名 / 验签 ───────────────────────────────────────────


def _digest(content: str, secret: str, algorithm: str) -> str:
    if algorithm == MD5:
        return hashlib.md5((content + secret).encode("utf-8")).hexdigest()
    if algorithm == MD5_KEY:
        # content&key=KEY，结果大写
        raw = f"{content}&key={secret}" if content else f"key={secret}"
        return hashlib.md5(raw.encode("utf-8")).hexdigest().upper()
    return hmac.new(
        secret.encode("utf-8"), content.encode("utf-8"), hashlib.sha256
    ).hexdigest().upper()


def sign(content: str, secret: str, algorithm: str = MD5) -> str:
    """
    对待签名字符串签名。

    Args:
        content: 规范化后的待签名字符串。
        secret: 摘要算法为商户密钥，RSA 为私钥（PEM 或裸 Base64）。
        algorithm: MD5 / MD5_KEY / HMAC-SHA256 / RSA2 / RSA。

    Returns:
        摘要算法返回十六进制字符串，RSA 返回 Base64 签名。

    Raises:
        SignError: 密钥为空或格式错误、算法不支持。
    """
    if not secret:
        raise SignError("签名密钥为空")
    if algorithm in _DIGEST_ALGORITHMS:
        return _digest(content, secret, algorithm)
    if algorithm in _RSA_HASHES:
        key = load_private_key(secret)
        h = _RSA_HASHES[algorithm].new(content.encode("utf-8"))
        try:
            signature = pkcs1_15.new(key).sign(h)
        except (ValueError, TypeError) as e:
            raise SignError(f"RSA 签名失败: {e}")
        return base64.b64encode(signature).decode("utf-8")
    raise SignError(f"不支持的签名算法: {algorithm}")


def verify(content: str, signature: str, key: str, algorithm: str = MD5) -> bool:
    """
    验证签名。

    任何异常输入（密钥格式错误、签名非 Base64、算法未知）都返回 False，
    不抛出异常。
    """
    if not signature or not key or not isinstance(signature, str):
        return False
    if algorithm in _DIGEST_ALGORITHMS:
        expected = _digest(content, key, algorithm)
        return hmac.compare_digest(
            expected.lower().encode("utf-8"),
            signature.strip().lower().encode("utf-8"),
        )
    if algorithm in _RSA_HASHES:
        try:
            public_key = load_public_key(key)
            raw = base64.b64decode(signature, validate=True)
            h = _RSA_HASHES[algorithm].new(content.encode("utf-8"))
            pkcs1_15.new(public_key).verify(h, raw)
            return True
        except (SignError, ValueError, TypeError, IndexError):
            return False
    return False


def generate_sign(params: dict, key: str, exclude=("sign_type",)) -> str:
    """规范化参数后拼接商户密钥做 MD5，返回小写 32 位十六进制签名。"""
    return sign(canonicalize(params, exclude), key, MD5)


def verify_sign(params: dict, key: str, sign_value: str, exclude=("sign_type",)) -> bool:
    """验证 MD5 参数签名。"""
    return verify(canonicalize(params, exclude), sign_value, key, MD5)


def nonce_str(length: int = 32) -> str:
    """生成单次调用使用的随机字符串。"""
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))
