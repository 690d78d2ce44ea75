from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .settings import settings

def add_cors(app: FastAPI) -> None:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
