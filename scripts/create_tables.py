#!/usr/bin/env python3
"""Create database tables and the status transition function for the Mail Fulfillment API."""

import os
import psycopg2
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

SQL = """
-- 1. users
CREATE TABLE IF NOT EXISTS users (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    email VARCHAR(255) UNIQUE NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    deleted_at TIMESTAMPTZ
);

-- 2. super_admins
CREATE TABLE IF NOT EXISTS super_admins (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    email VARCHAR(255) UNIQUE NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 3. mail_addresses (owned by the address book, read here)
CREATE TABLE IF NOT EXISTS mail_addresses (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    contact_name VARCHAR(255),
    company_name VARCHAR(255),
    address_line1 VARCHAR(255) NOT NULL,
    address_line2 VARCHAR(255),
    address_city VARCHAR(100) NOT NULL,
    address_state VARCHAR(50),
    address_zip VARCHAR(20) NOT NULL,
    address_country VARCHAR(2) NOT NULL DEFAULT 'US',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_mail_addresses_user_id ON mail_addresses(user_id);

-- 4. files (owned by the document store, read here)
CREATE TABLE IF NOT EXISTS files (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    file_url TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_files_user_id ON files(user_id);

-- 5. mail_pieces
CREATE TABLE IF NOT EXISTS mail_pieces (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    sender_address_id UUID NOT NULL REFERENCES mail_addresses(id),
    recipient_address_id UUID NOT NULL REFERENCES mail_addresses(id),
    file_id UUID NOT NULL REFERENCES files(id),
    mail_type VARCHAR(20) NOT NULL CHECK (
        mail_type IN ('letter', 'postcard', 'check', 'self_mailer', 'catalog', 'booklet')
    ),
    mail_class VARCHAR(30) NOT NULL DEFAULT 'usps_first_class' CHECK (
        mail_class IN ('usps_first_class', 'usps_priority', 'usps_express')
    ),
    mail_size VARCHAR(20) NOT NULL,
    description TEXT,
    status VARCHAR(20) NOT NULL DEFAULT 'draft' CHECK (
        status IN ('draft', 'pending_payment', 'paid', 'submitted', 'in_transit', 'delivered', 'returned', 'failed')
    ),
    payment_reference VARCHAR(255) UNIQUE,
    payment_status VARCHAR(20) NOT NULL DEFAULT 'pending' CHECK (
        payment_status IN ('pending', 'paid', 'failed', 'refunded')
    ),
    cost_cents INTEGER,
    carrier_reference VARCHAR(255) UNIQUE,
    carrier_status VARCHAR(50),
    tracking_number VARCHAR(255),
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_mail_pieces_user_id ON mail_pieces(user_id);
CREATE INDEX IF NOT EXISTS idx_mail_pieces_status ON mail_pieces(status);

-- 6. mail_piece_status_history (append-only)
CREATE TABLE IF NOT EXISTS mail_piece_status_history (
    id BIGSERIAL PRIMARY KEY,
    mail_piece_id UUID NOT NULL REFERENCES mail_pieces(id) ON DELETE CASCADE,
    status VARCHAR(20) NOT NULL,
    previous_status VARCHAR(20),
    description TEXT NOT NULL,
    source VARCHAR(20) NOT NULL CHECK (source IN ('system', 'user', 'webhook', 'manual')),
    raw_payload JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_mail_piece_status_history_piece ON mail_piece_status_history(mail_piece_id, id);

-- 7. webhook_events
CREATE TABLE IF NOT EXISTS webhook_events (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    provider_slug VARCHAR(20) NOT NULL,
    event_key VARCHAR(255) NOT NULL,
    event_type VARCHAR(100) NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'received' CHECK (
        status IN ('received', 'processed', 'ignored', 'failed')
    ),
    mail_piece_id UUID REFERENCES mail_pieces(id) ON DELETE SET NULL,
    outcome VARCHAR(30),
    payload JSONB,
    last_error TEXT,
    processed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE(provider_slug, event_key)
);

-- 8. observability_metric_snapshots
CREATE TABLE IF NOT EXISTS observability_metric_snapshots (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    source VARCHAR(50) NOT NULL,
    request_id VARCHAR(100),
    counters JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

TRANSITION_FUNCTION = """
CREATE OR REPLACE FUNCTION apply_mail_piece_transition(
    p_mail_piece_id UUID,
    p_expected_status TEXT,
    p_new_status TEXT,
    p_source TEXT,
    p_description TEXT,
    p_raw_payload JSONB DEFAULT NULL,
    p_updates JSONB DEFAULT '{}'::jsonb,
    p_require_null_carrier_reference BOOLEAN DEFAULT FALSE
) RETURNS SETOF mail_pieces
LANGUAGE plpgsql
AS $$
DECLARE
    updated mail_pieces;
BEGIN
    UPDATE mail_pieces SET
        status = p_new_status,
        payment_reference = COALESCE(p_updates->>'payment_reference', payment_reference),
        payment_status = COALESCE(p_updates->>'payment_status', payment_status),
        cost_cents = COALESCE((p_updates->>'cost_cents')::INTEGER, cost_cents),
        carrier_reference = COALESCE(p_updates->>'carrier_reference', carrier_reference),
        carrier_status = COALESCE(p_updates->>'carrier_status', carrier_status),
        tracking_number = COALESCE(p_updates->>'tracking_number', tracking_number),
        metadata = COALESCE(p_updates->'metadata', metadata),
        updated_at = NOW()
    WHERE id = p_mail_piece_id
      AND status = p_expected_status
      AND (NOT p_require_null_carrier_reference OR carrier_reference IS NULL)
    RETURNING * INTO updated;

    IF NOT FOUND THEN
        RETURN;
    END IF;

    INSERT INTO mail_piece_status_history (mail_piece_id, status, previous_status, description, source, raw_payload)
    VALUES (p_mail_piece_id, p_new_status, p_expected_status, p_description, p_source, p_raw_payload);

    RETURN NEXT updated;
END;
$$;
"""


def main():
    print("Connecting to database...")
    conn = psycopg2.connect(DATABASE_URL)
    conn.autocommit = True
    cur = conn.cursor()

    print("Creating tables...")
    cur.execute(SQL)

    print("Creating transition function...")
    cur.execute(TRANSITION_FUNCTION)

    # Verify
    cur.execute("SELECT table_name FROM information_schema.tables WHERE table_schema = 'public' ORDER BY table_name;")
    tables = cur.fetchall()
    print(f"\nTables created: {[t[0] for t in tables]}")

    cur.execute("SELECT proname FROM pg_proc WHERE proname = 'apply_mail_piece_transition';")
    functions = cur.fetchall()
    print(f"Functions: {[f[0] for f in functions]}")

    cur.close()
    conn.close()
    print("\nDone!")

if __name__ == "__main__":
    main()
