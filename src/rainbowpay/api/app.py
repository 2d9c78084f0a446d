"""ASGI entry point: ``uvicorn rainbowpay.api.app:app``."""

from rainbowpay.api.factory import create_app

app = create_app()
