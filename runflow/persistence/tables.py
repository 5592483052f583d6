ASSISTANTS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS assistants (
  assistant_id TEXT PRIMARY KEY,
  graph_id TEXT NOT NULL,
  name TEXT NOT NULL DEFAULT '',
  config JSONB NOT NULL DEFAULT '{}',
  metadata JSONB NOT NULL DEFAULT '{}',
  created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

THREADS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS threads (
  thread_id TEXT PRIMARY KEY,
  status TEXT NOT NULL DEFAULT 'idle', -- idle | busy | interrupted | error
  metadata JSONB NOT NULL DEFAULT '{}',
  config JSONB NOT NULL DEFAULT '{}',

  -- last projection of the engine's checkpoint
  "values" JSONB,
  interrupts JSONB NOT NULL DEFAULT '{}',
  error JSONB,

  created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_threads_metadata ON threads USING gin (metadata jsonb_path_ops);
"""

RUNS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS runs (
  run_id TEXT PRIMARY KEY,
  thread_id TEXT NOT NULL REFERENCES threads(thread_id) ON DELETE CASCADE,
  assistant_id TEXT NOT NULL,

  status TEXT NOT NULL, -- pending | running | error | success | timeout | interrupted
  metadata JSONB NOT NULL DEFAULT '{}',
  kwargs JSONB NOT NULL DEFAULT '{}',
  multitask_strategy TEXT NOT NULL DEFAULT 'reject',

  created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_runs_thread_created ON runs(thread_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_runs_pending ON runs(created_at) WHERE status = 'pending';
"""

RUN_ATTEMPTS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS run_attempts (
  run_id TEXT PRIMARY KEY REFERENCES runs(run_id) ON DELETE CASCADE,
  attempt INT NOT NULL DEFAULT 0
);
"""

ALL_TABLES_SQL = (
    ASSISTANTS_TABLE_SQL,
    THREADS_TABLE_SQL,
    RUNS_TABLE_SQL,
    RUN_ATTEMPTS_TABLE_SQL,
)
