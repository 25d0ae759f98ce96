"""
渠道网关 HTTP 客户端：各插件共享同一个连接池。

- 进程内只构造一次，由注册表注入到每个插件实例
- 每次请求都有硬超时，交互路径（下单）10 秒，退款 / 查询 30 秒
- 网络异常、非 2xx、响应无法解析统一转换为 ProviderError
"""

import json
import logging

import httpx

logger = logging.getLogger(__name__)

SUBMIT_TIMEOUT = 10.0
QUERY_TIMEOUT = 30.0

_DEFAULT_HEADERS = {
    "Accept": "*/*",
    "Accept-Language": "zh-CN,zh;q=0.8",
    "User-Agent": "paygate/1.0",
}


class ProviderError(Exception):
    """渠道接口调用失败（超时、网络错误、响应异常）。"""
    pass


class ProviderHTTP:
    """对 httpx.Client 的薄封装，httpx.Client 本身可在多线程间共享。"""

    def __init__(self, client: httpx.Client | None = None, timeout: float = SUBMIT_TIMEOUT):
        self._client = client or httpx.Client(
            timeout=timeout,
            headers=_DEFAULT_HEADERS,
            follow_redirects=False,
        )

    def close(self) -> None:
        self._client.close()

    def request(self, method: str, url: str, *, timeout: float = SUBMIT_TIMEOUT,
                **kwargs) -> httpx.Response:
        """发送请求并检查状态码。"""
        try:
            response = self._client.request(method, url, timeout=timeout, **kwargs)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            logger.warning("渠道接口超时: %s %s", method, url)
            raise ProviderError(f"请求渠道接口超时: {e}")
        except httpx.HTTPError as e:
            logger.warning("渠道接口请求失败: %s %s: %s", method, url, e)
            raise ProviderError(f"请求渠道接口失败: {e}")
        return response

    def post_form(self, url: str, data: dict, *, timeout: float = SUBMIT_TIMEOUT) -> httpx.Response:
        return self.request("POST", url, data=data, timeout=timeout)

    def get(self, url: str, params: dict | None = None, *,
            timeout: float = SUBMIT_TIMEOUT) -> httpx.Response:
        return self.request("GET", url, params=params, timeout=timeout)


def parse_json(response: httpx.Response) -> dict:
    """解析 JSON 响应体，失败时抛出 ProviderError。"""
    try:
        data = response.json()
    except (json.JSONDecodeError, ValueError) as e:
        raise ProviderError(f"解析渠道响应失败: {e}")
    if not isinstance(data, dict):
        raise ProviderError("渠道响应格式错误")
    return data
