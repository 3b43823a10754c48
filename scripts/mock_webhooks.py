from __future__ import annotations

import argparse
import json
import sys
import time
import urllib.error
import urllib.request

from backend.app.services.webhooks import sign_body


def post_json(url: str, body: bytes, headers: dict[str, str]) -> tuple[int, str]:
    request = urllib.request.Request(url, data=body, method="POST")
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=30) as response:
            content = response.read().decode("utf-8")
            return response.status, content
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def gateway_message(instance: str, index: int, phone: str, text: str) -> dict:
    return {
        "event": "messages.upsert",
        "instance": instance,
        "data": {
            "key": {
                "remoteJid": f"{phone}@s.whatsapp.net",
                "fromMe": False,
                "id": f"MOCK{int(time.time())}{index:04d}",
            },
            "pushName": f"Contato Teste {index}",
            "message": {"conversation": text},
            "messageType": "conversation",
        },
    }


def logzz_order(index: int, phone: str) -> dict:
    return {
        "order_number": f"MOCK-{index:05d}",
        "order_status": "Agendado",
        "client_name": f"Cliente Teste {index}",
        "client_phone": phone,
        "client_email": f"cliente{index}@example.com",
        "order_final_price": "197.00",
        "date_order": "2024-05-10 14:30:00",
        "products": {"main": [{"product_name": "Produto Teste"}]},
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Send mock gateway or Logzz events to a local API.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--source", choices=["gateway", "logzz"], default="gateway")
    parser.add_argument("--count", type=int, default=5)
    parser.add_argument("--start-index", type=int, default=1)
    parser.add_argument("--instance", default="mock-instance", help="Gateway instance name.")
    parser.add_argument("--text", default="oi", help="Inbound message text.")
    parser.add_argument("--token", default="", help="Logzz webhook token.")
    parser.add_argument("--secret", default="", help="Gateway webhook HMAC secret.")
    args = parser.parse_args()

    base = args.base_url.rstrip("/")
    if args.source == "logzz" and not args.token:
        parser.error("--token is required for logzz events")

    for index in range(args.start_index, args.start_index + args.count):
        phone = f"55119{index:08d}"
        headers: dict[str, str] = {}
        if args.source == "gateway":
            endpoint = f"{base}/webhooks/gateway"
            payload = gateway_message(args.instance, index, phone, args.text)
        else:
            endpoint = f"{base}/webhooks/logzz/order?token={args.token}"
            payload = logzz_order(index, phone)
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        if args.secret and args.source == "gateway":
            headers["X-Hub-Signature-256"] = sign_body(body, args.secret)
        status_code, response = post_json(endpoint, body, headers)
        print(f"{status_code} {args.source} {phone} {response}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
