SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    create table if not exists sync_state (
      id smallint primary key default 1 check (id = 1),
      last_known_head_block bigint,
      last_parsed_block bigint,
      total_blocks_processed bigint not null default 0,
      total_events_found bigint not null default 0,
      last_batch_block_count integer not null default 0,
      last_batch_event_count integer not null default 0,
      lease_owner text,
      lease_expires_at timestamptz,
      last_error text,
      error_count integer not null default 0,
      last_fetched_at timestamptz,
      created_at timestamptz not null default now(),
      updated_at timestamptz not null default now(),
      check (last_parsed_block is null or last_parsed_block <= last_known_head_block)
    )
    """,
    """
    create table if not exists raw_captures (
      id uuid primary key default gen_random_uuid(),
      source_url text not null,
      payload bytea not null default ''::bytea,
      content_hash text,
      http_status integer,
      etag text,
      last_modified text,
      status text not null default 'pending'
        check (status in ('pending', 'parsing', 'completed', 'failed')),
      trigger_reason text not null
        check (trigger_reason in ('live', 'liveEnd', 'update', 'scheduledRefresh', 'manual')),
      outcome text check (outcome in ('parsed', 'not_modified', 'unchanged')),
      parse_attempts integer not null default 0 check (parse_attempts >= 0),
      transport_failures integer not null default 0 check (transport_failures >= 0),
      priority smallint not null default 2 check (priority between 0 and 2),
      parse_error text,
      claim_token uuid,
      claimed_by text,
      claimed_at timestamptz,
      fetched_at timestamptz not null default now(),
      parsed_at timestamptz,
      linked_entity_id uuid,
      created_at timestamptz not null default now(),
      updated_at timestamptz not null default now()
    )
    """,
    """
    create unique index if not exists raw_captures_one_in_flight_per_url
      on raw_captures (source_url)
      where status in ('pending', 'parsing')
    """,
    """
    alter table raw_captures
      add column if not exists transport_failures integer not null default 0,
      add column if not exists priority smallint not null default 2
    """,
    """
    drop index if exists raw_captures_pending_fetched_at
    """,
    """
    create index if not exists raw_captures_pending_priority
      on raw_captures (priority, fetched_at, created_at)
      where status = 'pending'
    """,
    """
    create index if not exists raw_captures_source_url_status
      on raw_captures (source_url, status, fetched_at desc)
    """,
    """
    create table if not exists capture_retry_queue (
      capture_id uuid primary key references raw_captures (id) on delete cascade,
      due_at timestamptz not null,
      created_at timestamptz not null default now()
    )
    """,
    """
    create index if not exists capture_retry_queue_due_at on capture_retry_queue (due_at)
    """,
    """
    create table if not exists capture_events (
      id bigserial primary key,
      capture_id uuid not null,
      event_type text not null,
      actor text not null,
      payload jsonb not null default '{}'::jsonb,
      created_at timestamptz not null default now()
    )
    """,
    """
    create index if not exists capture_events_capture_id on capture_events (capture_id, id)
    """,
    """
    create table if not exists trigger_counters (
      trigger_reason text primary key,
      received_count bigint not null default 0,
      coalesced_count bigint not null default 0,
      updated_at timestamptz not null default now()
    )
    """,
    """
    create table if not exists podcasts (
      id uuid primary key default gen_random_uuid(),
      feed_url text not null unique,
      title text not null,
      link text,
      description text,
      author text,
      language text,
      image_url text,
      explicit boolean,
      podcast_guid text,
      medium text,
      categories text[] not null default '{}',
      has_gone_live boolean not null default false,
      created_at timestamptz not null default now(),
      updated_at timestamptz not null default now()
    )
    """,
    """
    create table if not exists episodes (
      id uuid primary key default gen_random_uuid(),
      podcast_id uuid not null references podcasts (id) on delete cascade,
      guid text not null,
      title text not null,
      description text,
      enclosure_url text,
      enclosure_type text,
      enclosure_length bigint,
      published_at timestamptz,
      duration_seconds integer,
      episode_number integer,
      season_number integer,
      episode_type text,
      created_at timestamptz not null default now(),
      updated_at timestamptz not null default now(),
      unique (podcast_id, guid)
    )
    """,
    """
    create table if not exists podping_events (
      id bigserial primary key,
      block_number bigint not null,
      op_index integer not null,
      transaction_id text,
      operation_id text not null,
      reason text not null check (reason in ('live', 'liveEnd', 'update', 'unrecognized')),
      medium text,
      feed_urls text[] not null default '{}',
      detail text,
      intaken_count integer not null default 0,
      coalesced_count integer not null default 0,
      created_at timestamptz not null default now(),
      unique (block_number, op_index)
    )
    """,
    """
    create index if not exists podping_events_reason_block on podping_events (reason, block_number desc)
    """,
    """
    create index if not exists podping_events_feed_urls on podping_events using gin (feed_urls)
    """,
    """
    create index if not exists podping_events_created_at on podping_events (created_at)
    """,
)
