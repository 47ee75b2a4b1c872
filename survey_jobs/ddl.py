"""Database schema DDL for survey jobs."""

JOBS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS webhook_job (
  id               UUID PRIMARY KEY DEFAULT gen_random_uuid(),
  tenant_id        TEXT NOT NULL,
  idempotency_key  TEXT NOT NULL,
  source           TEXT NOT NULL,
  event_type       TEXT NOT NULL,
  payload          JSONB NOT NULL,

  status           TEXT NOT NULL DEFAULT 'pending'
                   CHECK (status IN ('pending', 'processing', 'completed', 'failed')),

  attempts         INT NOT NULL DEFAULT 0,
  max_attempts     INT NOT NULL DEFAULT 3,
  next_retry_at    TIMESTAMPTZ DEFAULT now(),
  locked_at        TIMESTAMPTZ,

  processed_at     TIMESTAMPTZ,
  error_message    TEXT,

  created_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at       TIMESTAMPTZ NOT NULL DEFAULT now(),

  CHECK (attempts <= max_attempts)
);

-- Sole deduplication mechanism for enqueue
CREATE UNIQUE INDEX IF NOT EXISTS idx_webhook_job_idempotency_key
ON webhook_job (idempotency_key);

CREATE INDEX IF NOT EXISTS idx_webhook_job_pending_next_retry
ON webhook_job (next_retry_at)
WHERE status = 'pending';

CREATE INDEX IF NOT EXISTS idx_webhook_job_tenant_status
ON webhook_job (tenant_id, status);

-- Stale job sweep
CREATE INDEX IF NOT EXISTS idx_webhook_job_processing_updated
ON webhook_job (updated_at)
WHERE status = 'processing';
"""

DELIVERIES_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS survey_delivery (
  id                     UUID PRIMARY KEY DEFAULT gen_random_uuid(),
  tenant_id              TEXT NOT NULL,
  survey_id              UUID NOT NULL,
  recipient_address      TEXT NOT NULL,
  recipient_address_hash TEXT NOT NULL,

  status                 TEXT NOT NULL DEFAULT 'pending'
                         CHECK (status IN ('pending', 'queued', 'sent', 'delivered',
                                           'failed', 'undeliverable', 'responded')),

  retry_count            INT NOT NULL DEFAULT 0,
  max_retries            INT NOT NULL DEFAULT 2,
  provider_delivery_id   TEXT,
  error_message          TEXT,
  metadata               JSONB,
  is_test                BOOLEAN NOT NULL DEFAULT FALSE,

  created_at             TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at             TIMESTAMPTZ NOT NULL DEFAULT now(),
  delivered_at           TIMESTAMPTZ,
  responded_at           TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_survey_delivery_tenant_survey
ON survey_delivery (tenant_id, survey_id);

CREATE INDEX IF NOT EXISTS idx_survey_delivery_tenant_hash
ON survey_delivery (tenant_id, recipient_address_hash, created_at DESC);

CREATE INDEX IF NOT EXISTS idx_survey_delivery_provider_id
ON survey_delivery (provider_delivery_id)
WHERE provider_delivery_id IS NOT NULL;

CREATE TABLE IF NOT EXISTS survey_response (
  id                  UUID PRIMARY KEY DEFAULT gen_random_uuid(),
  tenant_id           TEXT NOT NULL,
  survey_id           UUID NOT NULL,
  delivery_id         UUID NOT NULL REFERENCES survey_delivery (id) ON DELETE CASCADE,
  customer_phone_hash TEXT NOT NULL,
  score               INT NOT NULL,
  category            TEXT NOT NULL CHECK (category IN ('promoter', 'passive', 'detractor')),
  feedback            TEXT,
  metadata            JSONB,
  is_test             BOOLEAN NOT NULL DEFAULT FALSE,
  responded_at        TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_survey_response_delivery
ON survey_response (delivery_id);
"""

# Minimal shapes of tables owned by other services; read-only from here.
DIRECTORY_TABLES_DDL = """
CREATE TABLE IF NOT EXISTS survey (
  id          UUID PRIMARY KEY DEFAULT gen_random_uuid(),
  tenant_id   TEXT NOT NULL,
  type        TEXT NOT NULL DEFAULT 'nps',
  status      TEXT NOT NULL DEFAULT 'draft',
  questions   JSONB NOT NULL DEFAULT '[]'::jsonb
);

CREATE TABLE IF NOT EXISTS whatsapp_connection (
  id               UUID PRIMARY KEY DEFAULT gen_random_uuid(),
  tenant_id        TEXT NOT NULL,
  phone_number_id  TEXT NOT NULL,
  status           TEXT NOT NULL DEFAULT 'pending'
);

CREATE INDEX IF NOT EXISTS idx_whatsapp_connection_phone_number_id
ON whatsapp_connection (phone_number_id);
"""

ALL_TABLES_DDL = JOBS_TABLE_DDL + DELIVERIES_TABLE_DDL + DIRECTORY_TABLES_DDL
