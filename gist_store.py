# gist_store.py
# ============================================================
# ssh-whitelist-sync - RemoteStateStore (GitHub private gist)
#
#  - 문서 = gist 안의 config.json 한 파일 (identifier -> address, flat JSON object)
#  - get(): 전체 문서 읽기
#  - set(document): 전체 문서 덮어쓰기 (부분 갱신/CAS 없음)
#  - 토큰은 로그에 절대 평문으로 남기지 않는다
# ============================================================
import json

import requests

from agent_common import env_str, log_local, mask_secret, requests_kwargs, safe_str
from sync_errors import StoreMalformed, StoreRejected, StoreUnavailable

GITHUB_API = (env_str("GITHUB_API") or "https://api.github.com").rstrip("/")
GIST_FILENAME = "config.json"
GIST_DESCRIPTION = "SSH Whitelist IPs - Managed by SSH Whitelist Manager"
GIST_DESCRIPTION_MATCH = "SSH Whitelist IPs"

# set() 실패 중 재시도해도 의미 없는 것들 (인증/권한/없는 gist/검증 실패)
_REJECT_CODES = (401, 403, 404, 422)

# GET /gists 한 페이지 최대치
GIST_LIST_PAGE_SIZE = 100


def parse_document(text):
    """
    gist 파일 내용 -> dict[str, str]
    - 빈 내용은 빈 문서
    - JSON object가 아니거나 값이 문자열이 아니면 StoreMalformed
    """
    if text is None or not str(text).strip():
        return {}
    try:
        obj = json.loads(text)
    except ValueError as e:
        raise StoreMalformed(f"{GIST_FILENAME} is not valid JSON: {safe_str(e, 200)}") from e
    if not isinstance(obj, dict):
        raise StoreMalformed(f"{GIST_FILENAME} must be a JSON object, got {type(obj).__name__}")
    doc = {}
    for k, v in obj.items():
        if not isinstance(k, str) or not k:
            raise StoreMalformed(f"{GIST_FILENAME} has an empty identifier")
        if not isinstance(v, str):
            raise StoreMalformed(f"{GIST_FILENAME} entry {k!r} is not a string address")
        doc[k] = v
    return doc


def render_document(document):
    return json.dumps(document, indent=2)


class GistStore:
    def __init__(self, token, gist_id, api_base=None, session=None):
        self.token = token
        self.gist_id = gist_id
        self.api_base = (api_base or GITHUB_API).rstrip("/")
        self.session = session or requests

    def _headers(self):
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def _request(self, method, path, payload=None, params=None):
        url = f"{self.api_base}{path}"
        kw = requests_kwargs()
        if payload is not None:
            kw["json"] = payload
        if params is not None:
            kw["params"] = params
        try:
            return self.session.request(method, url, headers=self._headers(), **kw)
        except requests.RequestException as e:
            log_local("gist_http_exception", {"method": method, "path": path, "error": safe_str(e)})
            raise StoreUnavailable(f"{method} {path} failed: {safe_str(e)}") from e

    # =========================
    # RemoteStateStore contract
    # =========================
    def get(self):
        r = self._request("GET", f"/gists/{self.gist_id}")
        if r.status_code != 200:
            log_local("gist_get_fail", {"gistId": self.gist_id, "code": r.status_code})
            raise StoreUnavailable(f"GET gist HTTP {r.status_code}: {safe_str(r.text, 200)}")
        try:
            gist = r.json()
        except ValueError as e:
            raise StoreMalformed(f"gist API returned non-json: {safe_str(r.text, 200)}") from e

        files = gist.get("files") if isinstance(gist, dict) else None
        entry = (files or {}).get(GIST_FILENAME)
        if not entry:
            # 파일이 없으면 빈 문서로 보지 않는다 (빈 문서 = 모든 룰 삭제)
            log_local("gist_file_missing", {"gistId": self.gist_id, "file": GIST_FILENAME})
            raise StoreMalformed(f"gist has no {GIST_FILENAME}")

        content = entry.get("content")
        if entry.get("truncated") and entry.get("raw_url"):
            content = self._get_raw(entry["raw_url"])
        return parse_document(content)

    def _get_raw(self, raw_url):
        try:
            r = self.session.get(raw_url, headers=self._headers(), **requests_kwargs())
        except requests.RequestException as e:
            raise StoreUnavailable(f"raw gist fetch failed: {safe_str(e)}") from e
        if r.status_code != 200:
            raise StoreUnavailable(f"raw gist fetch HTTP {r.status_code}")
        return r.text

    def set(self, document):
        payload = {"files": {GIST_FILENAME: {"content": render_document(document)}}}
        r = self._request("PATCH", f"/gists/{self.gist_id}", payload)
        if r.status_code == 200:
            log_local("gist_set_ok", {"gistId": self.gist_id, "entries": len(document)})
            return
        log_local("gist_set_fail", {"gistId": self.gist_id, "code": r.status_code, "resp": safe_str(r.text, 200)})
        if r.status_code in _REJECT_CODES:
            raise StoreRejected(f"PATCH gist HTTP {r.status_code}: {safe_str(r.text, 200)}")
        raise StoreUnavailable(f"PATCH gist HTTP {r.status_code}: {safe_str(r.text, 200)}")

    # =========================
    # Bootstrap helpers
    # =========================
    def validate_token(self):
        try:
            r = self._request("GET", "/user")
        except StoreUnavailable:
            return False
        ok = r.status_code == 200
        log_local("github_token_check", {"ok": ok, "code": r.status_code, "token": mask_secret(self.token)})
        return ok

    def _list_gists(self, page):
        r = self._request("GET", "/gists", params={"per_page": GIST_LIST_PAGE_SIZE, "page": page})
        if r.status_code != 200:
            raise StoreUnavailable(f"list gists HTTP {r.status_code}: {safe_str(r.text, 200)}")
        try:
            gists = r.json()
        except ValueError as e:
            raise StoreMalformed("gist list is not json") from e
        if not isinstance(gists, list):
            raise StoreMalformed(f"gist list is not a JSON array: {type(gists).__name__}")
        return [g for g in gists if isinstance(g, dict)]

    def find_or_create_gist(self):
        """
        기존 whitelist gist가 있으면 재사용, 없으면 빈 문서로 private gist 생성.
        returns (gist_id, is_new)
        """
        page = 1
        while True:
            gists = self._list_gists(page)
            for g in gists:
                files = g.get("files") or {}
                desc = g.get("description") or ""
                if GIST_FILENAME in files and GIST_DESCRIPTION_MATCH in desc:
                    self.gist_id = g.get("id")
                    log_local("gist_found", {"gistId": self.gist_id, "page": page})
                    return self.gist_id, False
            # 마지막 페이지 (한 페이지가 다 안 찼음)
            if len(gists) < GIST_LIST_PAGE_SIZE:
                break
            page += 1

        payload = {
            "description": GIST_DESCRIPTION,
            "public": False,
            "files": {GIST_FILENAME: {"content": render_document({})}},
        }
        r = self._request("POST", "/gists", payload)
        if r.status_code not in (200, 201):
            if r.status_code in _REJECT_CODES:
                raise StoreRejected(f"create gist HTTP {r.status_code}: {safe_str(r.text, 200)}")
            raise StoreUnavailable(f"create gist HTTP {r.status_code}: {safe_str(r.text, 200)}")
        try:
            created = r.json()
        except ValueError as e:
            raise StoreMalformed("create gist response is not json") from e
        self.gist_id = created.get("id") if isinstance(created, dict) else None
        if not self.gist_id:
            raise StoreMalformed("create gist response has no id")
        log_local("gist_created", {"gistId": self.gist_id})
        return self.gist_id, True
