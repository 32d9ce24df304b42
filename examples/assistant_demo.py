"""Minimal demonstration of the assistant service."""

from assistant_core import create_service

if __name__ == "__main__":
    messages = [
        {"id": "m1", "sentBySelf": False, "content": {"text": "Hi! Is the bike still available?"}},
    ]
    product = {"title": "City bike", "price": "$120", "condition": "Used - good"}
    with create_service() as service:
        reply = service.generate_response("demo-conversation", messages, "seller", product_info=product)
        print("Buyer:", messages[0]["content"]["text"])
        print("Assistant:", reply or "(no reply)")
