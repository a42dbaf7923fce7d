import os
import sqlite3 # This is the library that lets Python talk to SQL databases
import sys


def create_tables(db_path='instance/travelmate.db'):
    """
    This function sets up the whole TravelMate database on a bare SQLite file.
    It mirrors the models in app.py, for machines where you only have sqlite3
    and want to inspect or seed the schema by hand.
    """
    os.makedirs(os.path.dirname(db_path) or '.', exist_ok=True)
    conn = sqlite3.connect(db_path)
    try:
        cur = conn.cursor()

        # --- 1. Users ---
        # The login identity: email and hashed password only.
        cur.execute('''
        CREATE TABLE IF NOT EXISTS users (
            id VARCHAR(36) PRIMARY KEY,            -- UUID string
            email VARCHAR(120) NOT NULL UNIQUE,    -- Always stored lowercase
            password_hash VARCHAR(256) NOT NULL,
            created_at DATETIME NOT NULL
        )
        ''')

        # --- 2. Profiles ---
        # What other people see: username, full name, avatar.
        cur.execute('''
        CREATE TABLE IF NOT EXISTS profiles (
            id VARCHAR(36) PRIMARY KEY,
            user_id VARCHAR(36) NOT NULL UNIQUE,   -- Exactly one profile per user
            username VARCHAR(30) UNIQUE,
            full_name VARCHAR(100),
            avatar_url VARCHAR(500),
            email VARCHAR(120),
            created_at DATETIME NOT NULL,
            updated_at DATETIME NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users(id)
        )
        ''')

        # --- 3. Trips ---
        cur.execute('''
        CREATE TABLE IF NOT EXISTS trips (
            id VARCHAR(36) PRIMARY KEY,
            title VARCHAR(120) NOT NULL,           -- e.g., 'Bali Getaway'
            destination VARCHAR(120),
            start_date DATE,
            end_date DATE,
            description TEXT,
            created_by VARCHAR(36) NOT NULL,       -- The owner of the trip
            share_token VARCHAR(64) UNIQUE,        -- Secret code for the invite link
            created_at DATETIME NOT NULL,
            updated_at DATETIME NOT NULL,
            FOREIGN KEY (created_by) REFERENCES users(id)
        )
        ''')

        # --- 4. Trip members ---
        # Which users belong to which trips (Many-to-Many).
        cur.execute('''
        CREATE TABLE IF NOT EXISTS trip_members (
            id VARCHAR(36) PRIMARY KEY,
            trip_id VARCHAR(36) NOT NULL,
            user_id VARCHAR(36) NOT NULL,
            role VARCHAR(20) NOT NULL DEFAULT 'member', -- 'owner' or 'member'
            joined_at DATETIME NOT NULL,
            FOREIGN KEY (trip_id) REFERENCES trips(id),
            FOREIGN KEY (user_id) REFERENCES users(id),
            CONSTRAINT unique_trip_member UNIQUE (trip_id, user_id)
        )
        ''')

        # --- 5. Itinerary items ---
        cur.execute('''
        CREATE TABLE IF NOT EXISTS itinerary_items (
            id VARCHAR(36) PRIMARY KEY,
            trip_id VARCHAR(36) NOT NULL,
            title VARCHAR(200) NOT NULL,
            description TEXT,
            activity_date DATE NOT NULL,
            start_time TIME,
            end_time TIME,
            location VARCHAR(200),
            estimated_cost NUMERIC(10,2),
            created_by VARCHAR(36) NOT NULL,
            created_at DATETIME NOT NULL,
            updated_at DATETIME NOT NULL,
            FOREIGN KEY (trip_id) REFERENCES trips(id),
            FOREIGN KEY (created_by) REFERENCES users(id)
        )
        ''')

        # --- 6. Expenses ---
        cur.execute('''
        CREATE TABLE IF NOT EXISTS expenses (
            id VARCHAR(36) PRIMARY KEY,
            trip_id VARCHAR(36) NOT NULL,
            title VARCHAR(200) NOT NULL,
            description TEXT,
            amount NUMERIC(12,2) NOT NULL,
            currency VARCHAR(3),                   -- ISO code, e.g. 'USD'
            paid_by VARCHAR(36) NOT NULL,          -- Who paid the bill?
            expense_date DATE NOT NULL,
            itinerary_item_id VARCHAR(36),         -- Optional link to an activity
            created_at DATETIME NOT NULL,
            updated_at DATETIME NOT NULL,
            FOREIGN KEY (trip_id) REFERENCES trips(id),
            FOREIGN KEY (paid_by) REFERENCES users(id),
            FOREIGN KEY (itinerary_item_id) REFERENCES itinerary_items(id)
        )
        ''')

        # --- 7. Expense participants ---
        # Each row is one person's share of one expense.
        cur.execute('''
        CREATE TABLE IF NOT EXISTS expense_participants (
            id VARCHAR(36) PRIMARY KEY,
            expense_id VARCHAR(36) NOT NULL,
            user_id VARCHAR(36) NOT NULL,
            share_amount NUMERIC(12,2),
            FOREIGN KEY (expense_id) REFERENCES expenses(id),
            FOREIGN KEY (user_id) REFERENCES users(id),
            CONSTRAINT unique_expense_participant UNIQUE (expense_id, user_id)
        )
        ''')

        # --- Indexes ---
        cur.execute('CREATE INDEX IF NOT EXISTS ix_trip_members_user_id ON trip_members (user_id)')
        cur.execute('CREATE INDEX IF NOT EXISTS ix_itinerary_items_trip_id ON itinerary_items (trip_id)')
        cur.execute('CREATE INDEX IF NOT EXISTS ix_expenses_trip_id ON expenses (trip_id)')

        conn.commit()
        print(f"Successfully created database tables for TravelMate in {db_path}")

    except sqlite3.Error as e:
        print(f"An error occurred: {str(e)}")
        conn.rollback()
        raise
    finally:
        conn.close()


if __name__ == '__main__':
    create_tables(*sys.argv[1:2])
