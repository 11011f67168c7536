# ip_observer.py
# ============================================================
# ssh-whitelist-sync - AddressObserver
# - 현재 공인 IP 1회 조회 (상태 없음)
# - 실패/이상값은 ObserveUnavailable (빈 IP를 publish하는 것보다 stale IP가 낫다)
# ============================================================
import ipaddress

import requests

from agent_common import env_str, requests_kwargs, safe_str
from sync_errors import ObserveUnavailable

IP_ECHO_URL = env_str("IP_ECHO_URL") or "https://api.ipify.org?format=json"


class IpifyObserver:
    def __init__(self, url=None, session=None):
        self.url = url or IP_ECHO_URL
        self.session = session or requests

    def observe(self):
        try:
            r = self.session.get(self.url, **requests_kwargs())
        except requests.RequestException as e:
            raise ObserveUnavailable(f"ip echo unreachable: {safe_str(e)}") from e

        if r.status_code != 200:
            raise ObserveUnavailable(f"ip echo HTTP {r.status_code}: {safe_str(r.text, 200)}")

        try:
            body = r.json()
        except ValueError as e:
            raise ObserveUnavailable(f"ip echo non-json response: {safe_str(r.text, 200)}") from e

        ip = body.get("ip") if isinstance(body, dict) else None
        if not isinstance(ip, str) or not ip.strip():
            raise ObserveUnavailable(f"ip echo response without ip: {safe_str(body, 200)}")

        # 검증만 하고 텍스트는 그대로 돌려준다 (주소 정규화 안 함)
        ip = ip.strip()
        try:
            ipaddress.ip_address(ip)
        except ValueError as e:
            raise ObserveUnavailable(f"ip echo returned invalid address: {safe_str(ip, 100)}") from e
        return ip
