"""One HTTP POST per model turn."""

import http.client
import json
import urllib.error
import urllib.request

from .errors import DecodeError, TransportError

DEFAULT_TIMEOUT = 300
MAX_ERROR_BODY = 2000


def post_json(url: str, headers: dict, body: dict, timeout: float = DEFAULT_TIMEOUT) -> dict:
    """POST a JSON body and return the decoded JSON response.

    Raises TransportError for non-2xx statuses and network failures, and
    DecodeError when the response is not valid JSON. Never retries.
    """
    payload = json.dumps(body).encode("utf-8")
    req = urllib.request.Request(url, data=payload, headers=headers, method="POST")
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            raw = resp.read()
    except urllib.error.HTTPError as e:
        try:
            detail = e.read().decode("utf-8", errors="replace")
        except (OSError, http.client.HTTPException):
            detail = ""
        raise TransportError(e.code, detail[:MAX_ERROR_BODY] or str(e.reason))
    except urllib.error.URLError as e:
        raise TransportError(None, str(e.reason))
    except http.client.HTTPException as e:
        raise TransportError(None, f"{type(e).__name__}: {e}")
    except (TimeoutError, OSError) as e:
        raise TransportError(None, str(e) or type(e).__name__)

    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecodeError(f"invalid JSON from {url}: {e}")
