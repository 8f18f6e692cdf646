# create_db.py
"""
Разовое развёртывание: создаёт базу и применяет migrations/init.sql.
Приложение при старте схему не трогает.
"""

import asyncio

import asyncpg

from src.config import settings
from src.common.logger import setup_logging, log_info, log_error
from src.common.constants import TypeMsg
from src.infra.database import apply_migrations, close_db, get_db, init_db


async def create_db() -> None:
    db_name = settings.database.DB_NAME
    try:
        # Подключаемся к служебной базе, чтобы создать рабочую
        sys_conn = await asyncpg.connect(
            user=settings.database.DB_USER,
            password=settings.database.DB_PASSWORD,
            host=settings.database.DB_HOST,
            port=settings.database.DB_PORT,
            database="postgres",
        )
        try:
            exists = await sys_conn.fetchval("SELECT 1 FROM pg_database WHERE datname = $1", db_name)
            if not exists:
                await log_info(f"Создаём базу {db_name}...", type_msg=TypeMsg.INFO)
                await sys_conn.execute(f'CREATE DATABASE "{db_name}"')
            else:
                await log_info(f"База {db_name} уже существует", type_msg=TypeMsg.INFO)
        finally:
            await sys_conn.close()

        await init_db()
        await apply_migrations(get_db())
        await log_info("Схема применена", type_msg=TypeMsg.INFO)
    except (asyncpg.PostgresError, OSError) as e:
        await log_error(f"Не удалось подготовить базу: {e}")
        raise
    finally:
        await close_db()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(create_db())
