"""Request-scoped access to the collaborators built by the app factory."""
from fastapi import Request

from files_manager.config import Settings
from files_manager.services.blob_store import BlobStore
from files_manager.services.job_queue import JobQueue


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_blob_store(request: Request) -> BlobStore:
    return request.app.state.blob_store


def get_job_queue(request: Request) -> JobQueue:
    return request.app.state.job_queue
