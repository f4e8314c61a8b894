import sqlite3

if __name__ == '__main__':
    conn = sqlite3.connect("source.db")

    # 插入新数据，并更新一条已有数据
    conn.execute(
        "INSERT INTO users (name, email, updated_at) VALUES (?, ?, strftime('%Y-%m-%d %H:%M:%f', 'now'))",
        ("用户101", "user101@example.com")
    )
    conn.execute(
        "UPDATE users SET email = ?, updated_at = strftime('%Y-%m-%d %H:%M:%f', 'now') WHERE id = 1",
        ("user0@new.example.com",)
    )
    conn.commit()
    conn.close()

    print("✓ 新数据已写入，将在下一轮同步 (5 秒内) 复制到 replica.db")
