"""
提供商配置管理服务

管理后台对 provider_configurations 表的增删改查：
- 明文 API Key 写入前加密
- 设为默认时在同一事务内清除其他配置的默认标记
"""

import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import NotFoundError
from app.infra.crypto import get_cipher
from app.models import ProviderConfiguration
from app.schemas.provider import ProviderConfigCreate, ProviderConfigUpdate

logger = logging.getLogger(__name__)


async def _clear_other_defaults(session: AsyncSession, keep_id: str) -> None:
    await session.execute(
        update(ProviderConfiguration)
        .where(ProviderConfiguration.id != keep_id, ProviderConfiguration.is_default.is_(True))
        .values(is_default=False)
    )


async def list_provider_configs(session: AsyncSession) -> list[ProviderConfiguration]:
    result = await session.execute(
        select(ProviderConfiguration).order_by(ProviderConfiguration.created_at.desc())
    )
    return list(result.scalars().all())


async def get_provider_config(session: AsyncSession, config_id: str) -> ProviderConfiguration:
    config = await session.get(ProviderConfiguration, config_id)
    if config is None:
        raise NotFoundError(f"提供商配置不存在: {config_id}")
    return config


async def create_provider_config(
    session: AsyncSession,
    data: ProviderConfigCreate,
    user_id: str | None = None,
) -> ProviderConfiguration:
    """创建提供商配置"""
    values = data.model_dump(exclude={"api_key"})
    config = ProviderConfiguration(
        **values,
        api_key_encrypted=get_cipher().encrypt(data.api_key) if data.api_key else "",
        created_by=user_id,
        updated_by=user_id,
    )
    session.add(config)
    await session.flush()
    if config.is_default:
        await _clear_other_defaults(session, config.id)
    await session.commit()
    await session.refresh(config)

    logger.info(
        f"创建提供商配置 {config.name} ({config.provider}:{config.model_name})",
        extra={"config_id": config.id, "is_default": config.is_default},
    )
    return config


async def update_provider_config(
    session: AsyncSession,
    config_id: str,
    data: ProviderConfigUpdate,
    user_id: str | None = None,
) -> ProviderConfiguration:
    """更新提供商配置（只更新提交的字段）"""
    config = await get_provider_config(session, config_id)
    changes = data.model_dump(exclude_unset=True)

    api_key = changes.pop("api_key", None)
    if api_key is not None:
        config.api_key_encrypted = get_cipher().encrypt(api_key) if api_key else ""

    for field, value in changes.items():
        setattr(config, field, value)
    config.updated_by = user_id

    if config.is_default:
        await _clear_other_defaults(session, config.id)
    await session.commit()
    await session.refresh(config)

    logger.info(f"更新提供商配置 {config.name}", extra={"config_id": config.id, "fields": sorted(changes)})
    return config


async def delete_provider_config(session: AsyncSession, config_id: str) -> None:
    """删除提供商配置（删除活动默认配置后，对话将返回 ConfigurationError）"""
    config = await get_provider_config(session, config_id)
    await session.delete(config)
    await session.commit()
    logger.info(f"删除提供商配置 {config.name}", extra={"config_id": config_id})
