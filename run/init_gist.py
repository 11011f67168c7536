#!/usr/bin/env python3
# ssh-whitelist-sync - whitelist gist bootstrap
# - GITHUB_TOKEN (gist scope) 검증: GET /user
# - 기존 "SSH Whitelist IPs" gist 찾기, 없으면 빈 문서로 private gist 생성
# - --save : gistId를 CONFIG_DIR/config.json에 저장 (토큰은 저장 안 함)
#
#   python -m run.init_gist [--save]   (프로젝트 루트에서)
import os
import sys

from agent_common import SETTINGS_PATH, configure_logging, mask_secret, safe_str, save_settings
from gist_store import GistStore
from sync_errors import SyncError


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    save = "--save" in [str(a).strip().lower() for a in argv]
    configure_logging("init")

    token = os.environ.get("GITHUB_TOKEN", "").strip()
    if not token:
        print("[ERROR] GITHUB_TOKEN not set. Generate one at https://github.com/settings/tokens (scope: gist)")
        return 2

    store = GistStore(token, None)

    print("============================================================")
    print("[GITHUB_API]  ", store.api_base)
    print("[GITHUB_TOKEN]", mask_secret(token))
    print("============================================================")

    print("[1] Verifying GitHub access...")
    if not store.validate_token():
        print("[ERROR] Invalid GitHub token")
        return 3

    print("[2] Setting up whitelist gist...")
    try:
        gist_id, is_new = store.find_or_create_gist()
    except SyncError as e:
        print("[ERROR] gist setup failed:", safe_str(e))
        return 4

    print(f"[OK] {'Created new' if is_new else 'Found existing'} gist: {gist_id}")
    if save:
        if save_settings({"gistId": gist_id}):
            print("[OK] saved gistId to", SETTINGS_PATH)
        else:
            print("[WARN] could not save", SETTINGS_PATH)
    else:
        print(f"export GIST_ID={gist_id}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
