import asyncio
import sqlite3

from db_sync import SyncEngine, load_config
from db_sync.utils.logging import configure_from_settings


def create_sqlite_data():
    for path in ("source.db", "replica.db"):
        conn = sqlite3.connect(path)
        conn.execute("DROP TABLE IF EXISTS users")
        conn.execute("""
                     CREATE TABLE users
                     (
                         id         INTEGER PRIMARY KEY AUTOINCREMENT,
                         name       TEXT NOT NULL,
                         email      TEXT NOT NULL,
                         updated_at TEXT NOT NULL
                     )
                     """)
        if path == "source.db":
            # 插入测试数据
            for i in range(100):
                conn.execute(
                    "INSERT INTO users (name, email, updated_at) VALUES (?, ?, strftime('%Y-%m-%d %H:%M:%f', 'now'))",
                    (f"用户{i}", f"user{i}@example.com")
                )
        conn.commit()
        conn.close()
    print("✓ 测试数据库创建完成: source.db (100 条用户数据), replica.db (空表)")


async def main():
    # 准备测试数据
    create_sqlite_data()

    config = load_config("sync.yaml")
    configure_from_settings(config.global_settings)
    engine = SyncEngine(config)

    # 每 5 秒同步一批，直到 Ctrl+C
    runner = asyncio.create_task(engine.run_forever())
    try:
        while not runner.done():
            await asyncio.sleep(5)
            status = engine.get_status()
            print(f"状态: {status.state.value}, 轮次: {status.runs}, 累计写入: {status.total_rows} 行")
    except asyncio.CancelledError:
        print("\n停止同步...")
        engine.stop()
        await runner
    finally:
        engine.close()


if __name__ == "__main__":
    asyncio.run(main())
