import logging
import time

import requests

logger = logging.getLogger("surgebot.telegram")

API_URL = "https://api.telegram.org/bot{token}"


class TelegramAPI:
    """Thin client for the Telegram Bot API"""

    def __init__(self, token, timeout=30, session=None):
        self.base_url = API_URL.format(token=token)
        self.timeout = timeout
        self.session = session or requests.Session()

    def send_request(self, method, params=None):
        """Call an API method. Returns the decoded response, or None on any failure"""
        try:
            response = self.session.post(f"{self.base_url}/{method}", json=params, timeout=self.timeout)

            if response.status_code == 400:
                # Stale callback queries are expected after restarts
                if "query is too old" in response.text or "query ID is invalid" in response.text:
                    return None
                logger.error("Bad Request 400 in %s: %s", method, response.text)
                return response.json()
            elif response.status_code in (403, 404):
                return response.json()
            elif response.status_code == 409:
                return None
            elif response.status_code == 429:
                # Rate limited
                time.sleep(1)
                return None

            response.raise_for_status()
            return response.json()

        except requests.exceptions.Timeout:
            logger.warning("Timeout calling %s", method)
            return None
        except requests.exceptions.RequestException as e:
            logger.error("API request %s failed: %s", method, e)
            return None
        except ValueError as e:
            logger.error("API %s returned invalid JSON: %s", method, e)
            return None

    def send_message(self, chat_id, text, reply_markup=None, parse_mode="HTML"):
        """Send a message. True if Telegram accepted it"""
        if not chat_id or not isinstance(chat_id, (int, str)):
            logger.warning("Skipped send, invalid chat_id: %r", chat_id)
            return False

        params = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": parse_mode,
            "disable_web_page_preview": True,
        }
        if reply_markup:
            params["reply_markup"] = reply_markup

        response = self.send_request("sendMessage", params)
        if not response or not response.get("ok"):
            desc = response.get("description", "unknown error") if response else "no response"
            logger.warning("Could not send message to %s: %s", chat_id, desc)
            return False
        return True

    def answer_callback(self, callback_query_id, text=None):
        params = {"callback_query_id": callback_query_id}
        if text:
            params["text"] = text
        return self.send_request("answerCallbackQuery", params)

    def get_updates(self, offset=None, timeout=30):
        """Long-poll for updates. Network errors propagate so the polling loop can back off"""
        params = {"timeout": timeout, "allowed_updates": ["message", "callback_query"]}
        if offset:
            params["offset"] = offset

        response = self.session.post(f"{self.base_url}/getUpdates", json=params, timeout=timeout + 10)
        if response.status_code == 409:
            # Another instance is polling
            logger.warning("getUpdates conflict (409), is another instance running?")
            return []
        response.raise_for_status()
        result = response.json()
        if not result.get("ok"):
            logger.warning("getUpdates failed: %s", result.get("description"))
            return []
        return result.get("result", [])


def reply_keyboard(buttons):
    """Keyboard under the input field; buttons is a list of rows of labels"""
    return {"keyboard": [list(row) for row in buttons], "resize_keyboard": True, "one_time_keyboard": False}


def inline_keyboard(buttons):
    """buttons is a list of rows of (text, callback_data) pairs"""
    return {
        "inline_keyboard": [
            [{"text": text, "callback_data": data} for text, data in row]
            for row in buttons
        ]
    }
