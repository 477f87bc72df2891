"""Accessors for collaborators owned by the app lifespan."""

from fastapi import Request

from elvira_shared.config import Settings
from elvira_shared.storage import StoragePort

from ..services.catalog_client import CatalogClientFactory
from ..services.quota_governor import QuotaGovernor
from ..services.session_registry import SessionRegistry


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_storage(request: Request) -> StoragePort:
    return request.app.state.storage


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def get_governor(request: Request) -> QuotaGovernor:
    return request.app.state.governor


def get_catalog_factory(request: Request) -> CatalogClientFactory:
    return request.app.state.catalog_factory
