# ASGI entrypoint: uvicorn pledgr.app:app
from .main import create_app

app = create_app()
