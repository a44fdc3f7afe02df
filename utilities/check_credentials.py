"""
Check Credentials - Local Utility
Verifies the Warcraft Logs client credentials from .env and shows the API point budget
"""

import os
import sys

import requests
from dotenv import load_dotenv

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "bot"))

from config import API_TIMEOUT_SECONDS, WCL_GQL_CLIENT, WCL_TOKEN_URL

RATE_LIMIT_QUERY = "{ rateLimitData { limitPerHour pointsSpentThisHour pointsResetIn } }"


def check_credentials() -> bool:
    """Exchange client credentials for a token and query the rate limit"""
    load_dotenv()
    client_id = os.getenv("WCL_CLIENT_ID", "").strip()
    client_secret = os.getenv("WCL_CLIENT_SECRET", "").strip()

    if not client_id or not client_secret:
        print("❌ WCL_CLIENT_ID / WCL_CLIENT_SECRET missing in .env")
        return False

    print("🔄 Requesting token...")
    try:
        response = requests.post(
            WCL_TOKEN_URL,
            data={"grant_type": "client_credentials"},
            auth=(client_id, client_secret),
            timeout=API_TIMEOUT_SECONDS,
        )
    except requests.RequestException as e:
        print(f"❌ Token request failed: {e}")
        return False

    if response.status_code != 200:
        print(f"❌ Token rejected: HTTP {response.status_code}")
        return False

    token = response.json().get("access_token")
    print(f"✅ Token OK (expires in {response.json().get('expires_in', '?')}s)")

    try:
        response = requests.post(
            WCL_GQL_CLIENT,
            json={"query": RATE_LIMIT_QUERY},
            headers={"Authorization": f"Bearer {token}"},
            timeout=API_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        limits = response.json()["data"]["rateLimitData"]
    except (requests.RequestException, KeyError, TypeError, ValueError) as e:
        print(f"⚠️ Token works but the rate limit query failed: {e}")
        return True

    print(f"📊 Points used this hour: {limits['pointsSpentThisHour']} / {limits['limitPerHour']}")
    print(f"🕒 Resets in {limits['pointsResetIn']}s")
    return True


if __name__ == "__main__":
    sys.exit(0 if check_credentials() else 1)
