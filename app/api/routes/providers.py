"""
提供商配置管理接口（管理员）

API Key 明文只在请求中出现，存储时加密，响应中只返回 has_api_key。
"""

from fastapi import APIRouter, Depends, Path, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db_session, require_admin
from app.schemas.provider import ProviderConfigCreate, ProviderConfigResponse, ProviderConfigUpdate
from app.services import provider_config as config_service

router = APIRouter(prefix="/v1/admin/providers", tags=["providers"])


@router.get("", response_model=list[ProviderConfigResponse])
async def list_providers(
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    configs = await config_service.list_provider_configs(db)
    return [ProviderConfigResponse.from_model(c) for c in configs]


@router.post("", response_model=ProviderConfigResponse, status_code=status.HTTP_201_CREATED)
async def create_provider(
    payload: ProviderConfigCreate,
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    config = await config_service.create_provider_config(db, payload, user_id=admin_id)
    return ProviderConfigResponse.from_model(config)


@router.get("/{config_id}", response_model=ProviderConfigResponse)
async def get_provider(
    config_id: str = Path(..., description="配置 ID"),
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    config = await config_service.get_provider_config(db, config_id)
    return ProviderConfigResponse.from_model(config)


@router.patch("/{config_id}", response_model=ProviderConfigResponse)
async def update_provider(
    payload: ProviderConfigUpdate,
    config_id: str = Path(..., description="配置 ID"),
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    config = await config_service.update_provider_config(db, config_id, payload, user_id=admin_id)
    return ProviderConfigResponse.from_model(config)


@router.delete("/{config_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_provider(
    config_id: str = Path(..., description="配置 ID"),
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    await config_service.delete_provider_config(db, config_id)
