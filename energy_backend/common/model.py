from datetime import datetime
from datetime import timezone as datetime_timezone
from typing import Annotated

import sqlalchemy as sa

from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, MappedAsDataclass, declared_attr, mapped_column

from energy_backend.utils.timezone import timezone

# 通用 Mapped 类型主键, 需手动添加，参考以下使用方式
# MappedBase -> id: Mapped[id_key] = mapped_column(init=False, default_factory=uuid4_str)
# DataClassBase && Base -> id: Mapped[id_key] = mapped_column(init=False, default_factory=uuid4_str)
id_key = Annotated[
    str,
    mapped_column(sa.String(36), primary_key=True, index=True, sort_order=-999, comment='主键 id'),
]


class TimeZone(sa.TypeDecorator[datetime]):
    """PostgreSQL 存储带时区时间; SQLite 丢失时区信息, 统一按 UTC 写入并在读取时还原"""

    impl = sa.DateTime(timezone=True)
    cache_ok = True

    @property
    def python_type(self) -> type[datetime]:
        return datetime

    def process_bind_param(self, value: datetime | None, dialect: sa.Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.tz_info)
        return value.astimezone(datetime_timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: sa.Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=datetime_timezone.utc)
        return timezone.from_datetime(value)


class DateTimeMixin(MappedAsDataclass):
    """日期时间 Mixin 数据类"""

    created_at: Mapped[datetime] = mapped_column(
        TimeZone, init=False, default_factory=timezone.now, sort_order=999, comment='创建时间'
    )
    updated_at: Mapped[datetime] = mapped_column(
        TimeZone, init=False, default_factory=timezone.now, onupdate=timezone.now, sort_order=999, comment='更新时间'
    )


class MappedBase(AsyncAttrs, DeclarativeBase):
    """
    声明式基类, 作为所有基类或数据模型类的父类而存在

    `AsyncAttrs <https://docs.sqlalchemy.org/en/20/orm/extensions/asyncio.html#sqlalchemy.ext.asyncio.AsyncAttrs>`__

    `DeclarativeBase <https://docs.sqlalchemy.org/en/20/orm/declarative_config.html>`__
    """

    @declared_attr.directive
    def __table_args__(cls) -> dict:
        return {'comment': cls.__doc__ or ''}


class DataClassBase(MappedAsDataclass, MappedBase):
    """
    声明性数据类基类, 它将带有数据类集成, 允许使用更高级配置, 但你必须注意它的一些特性, 尤其是和 DeclarativeBase 一起使用时

    `MappedAsDataclass <https://docs.sqlalchemy.org/en/20/orm/dataclasses.html#orm-declarative-native-dataclasses>`__
    """

    __abstract__ = True


class Base(DataClassBase, DateTimeMixin):
    """
    声明性 Mixin 数据类基类, 带有数据类集成, 并包含 MiXin 数据类基础表结构
    """

    __abstract__ = True
