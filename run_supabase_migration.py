#!/usr/bin/env python3
"""Check the Supabase schema used by TourPro and print the SQL for anything missing."""
import sys
sys.path.insert(0, '.')

from tourpro.core.config import get_settings
from tourpro.db.supabase_client import get_supabase

DOCUMENTS_SQL = """
CREATE EXTENSION IF NOT EXISTS vector;

CREATE TABLE IF NOT EXISTS documents (
    id BIGSERIAL PRIMARY KEY,
    content TEXT NOT NULL,
    metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    embedding VECTOR({dim}) NOT NULL
);

CREATE INDEX IF NOT EXISTS documents_source_idx ON documents ((metadata->>'source'));
CREATE INDEX IF NOT EXISTS documents_embedding_idx ON documents
    USING ivfflat (embedding vector_cosine_ops) WITH (lists = 100);
"""

MATCH_DOCUMENTS_SQL = """
CREATE OR REPLACE FUNCTION match_documents(query_embedding VECTOR({dim}), match_count INT DEFAULT 8)
RETURNS TABLE (id BIGINT, content TEXT, metadata JSONB, similarity FLOAT)
LANGUAGE sql STABLE
AS $$
    SELECT id, content, metadata, 1 - (embedding <=> query_embedding) AS similarity
    FROM documents
    ORDER BY embedding <=> query_embedding
    LIMIT match_count;
$$;
"""

STRUCTURED_KNOWLEDGE_SQL = """
CREATE TABLE IF NOT EXISTS structured_knowledge (
    filename TEXT PRIMARY KEY,
    content TEXT NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

INGEST_METADATA_SQL = """
CREATE TABLE IF NOT EXISTS ingest_metadata (
    key TEXT PRIMARY KEY,
    document_count INT NOT NULL DEFAULT 0,
    file_count INT NOT NULL DEFAULT 0,
    last_ingested_at TIMESTAMPTZ,
    embedding_model TEXT
);
"""


def _check(supabase, label, probe, sql):
    print(f"🔍 Checking {label}...")
    try:
        probe(supabase)
        print(f"✅ {label} is available")
        return True
    except Exception as e:
        print(f"❌ {label} check failed: {e}")
        print("💡 Run this SQL in your Supabase SQL editor:")
        print(sql)
        return False


def run_migration():
    settings = get_settings()
    dim = settings.EMBEDDING_DIM
    supabase = get_supabase()

    print("🚀 Checking TourPro schema")

    checks = [
        (
            "documents table",
            lambda s: s.table('documents').select('id').limit(1).execute(),
            DOCUMENTS_SQL.format(dim=dim),
        ),
        (
            "match_documents function",
            lambda s: s.rpc('match_documents', {'query_embedding': [0.0] * dim, 'match_count': 1}).execute(),
            MATCH_DOCUMENTS_SQL.format(dim=dim),
        ),
        (
            "structured_knowledge table",
            lambda s: s.table('structured_knowledge').select('filename').limit(1).execute(),
            STRUCTURED_KNOWLEDGE_SQL,
        ),
        (
            "ingest_metadata table",
            lambda s: s.table('ingest_metadata').select('key').limit(1).execute(),
            INGEST_METADATA_SQL,
        ),
    ]

    results = [_check(supabase, label, probe, sql) for label, probe, sql in checks]
    if not all(results):
        sys.exit(1)
    print("✅ Schema is ready")

if __name__ == "__main__":
    run_migration()
