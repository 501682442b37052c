"""
SQLAlchemy ORM 基类定义

所有数据库模型都必须继承自这个 Base 类。
SQLAlchemy 会通过 Base.metadata 收集所有模型的表结构信息，
用于自动创建表、生成迁移脚本等。
"""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """
    声明式基类

    所有继承此类的模型都会：
    1. 自动注册到 Base.metadata
    2. 获得 ORM 映射能力
    3. 支持通过 Base.metadata.create_all() 创建表
    """
    pass
