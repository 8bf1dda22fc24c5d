"""
MySQL store for pulled attendance records.

Rows are de-duplicated by (device_sn, user_id, check_time), so storing the
same batch twice is harmless. A batch counts as persisted only when every
row was written and the commit succeeded.
"""
import pymysql

from zk_utils import log_msg

CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS device_pull_logs (
        id INT AUTO_INCREMENT PRIMARY KEY,
        device_sn VARCHAR(50),
        user_id VARCHAR(50),
        check_time DATETIME,
        verify_type VARCHAR(10),
        status VARCHAR(10),
        pulled_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        INDEX idx_device_sn (device_sn),
        INDEX idx_user_id (user_id),
        INDEX idx_check_time (check_time),
        UNIQUE KEY unique_record (device_sn, user_id, check_time)
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
"""

INSERT_SQL = """
    INSERT IGNORE INTO device_pull_logs
    (device_sn, user_id, check_time, verify_type, status)
    VALUES (%s, %s, %s, %s, %s)
"""


class StoreResult:
    def __init__(self, inserted=0, duplicates=0, failed=0, committed=False):
        self.inserted = inserted
        self.duplicates = duplicates
        self.failed = failed
        self.committed = committed

    @property
    def stored(self):
        """Rows known to be in the table after the commit"""
        if not self.committed:
            return 0
        return self.inserted + self.duplicates

    def __repr__(self):
        return (f"<StoreResult inserted={self.inserted} duplicates={self.duplicates} "
                f"failed={self.failed} committed={self.committed}>")


def connect_to_mysql(db_config):
    """Connect to MySQL cloud database"""
    if not db_config:
        return None
    try:
        return pymysql.connect(
            host=db_config.get('host', 'localhost'),
            user=db_config.get('user', ''),
            password=db_config.get('password', ''),
            database=db_config.get('database', ''),
            port=db_config.get('port', 3306),
            charset='utf8mb4',
            cursorclass=pymysql.cursors.DictCursor,
            connect_timeout=30
        )
    except pymysql.MySQLError as e:
        log_msg(f"MySQL connection error: {e}", "ERROR")
        return None


def store_records(device_sn, records, db_config):
    """Insert a batch of AttendanceRecord; returns a StoreResult"""
    result = StoreResult()
    if not records:
        result.committed = True
        return result

    conn = connect_to_mysql(db_config)
    if not conn:
        log_msg("Cannot sync to cloud - no database connection", "WARNING")
        return result

    try:
        cursor = conn.cursor()
        cursor.execute(CREATE_TABLE_SQL)

        for record in records:
            row = record.to_dict()
            values = (device_sn, row['user_id'], row['check_time'], row['verify_type'], row['status'])
            try:
                cursor.execute(INSERT_SQL, values)
            except pymysql.MySQLError as e:
                log_msg(f"Error inserting record {values}: {e}", "ERROR")
                result.failed += 1
                continue
            if cursor.rowcount:
                result.inserted += 1
            else:
                result.duplicates += 1

        conn.commit()
        result.committed = True
    except pymysql.MySQLError as e:
        log_msg(f"Error syncing to MySQL: {e}", "ERROR")
        result.committed = False
    finally:
        conn.close()

    log_msg(f"Stored batch for {device_sn}: {result.inserted} new, {result.duplicates} already present, "
            f"{result.failed} failed")
    return result
