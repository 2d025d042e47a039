"""Server-side PL/pgSQL functions for atomic quota decisions.

Each function serializes callers for the same subject by taking a row lock
(SELECT ... FOR UPDATE) after making sure the counter row exists, resets a
counter left over from an earlier period, and only then evaluates the limit.
A NULL limit means unlimited: the decision is always "allowed" and the
counter still increments.
"""

CHECK_AND_INCREMENT_USAGE = "check_and_increment_usage"
CHECK_AND_INCREMENT_DEVICE_USAGE = "check_and_increment_device_usage"
CHECK_QUOTA_WITH_PENDING = "check_quota_with_pending"
CHECK_DEVICE_QUOTA_WITH_PENDING = "check_device_quota_with_pending"

CHECK_AND_INCREMENT_USAGE_SQL = """
CREATE OR REPLACE FUNCTION check_and_increment_usage(
    p_user_id text,
    p_limit integer,
    p_period_start date
)
RETURNS TABLE (allowed boolean, offers_generated integer, period_start date)
LANGUAGE plpgsql
AS $$
#variable_conflict use_column
DECLARE
    v_period date;
    v_count integer;
BEGIN
    INSERT INTO usage_counters (user_id, period_start, offers_generated, updated_at)
    VALUES (p_user_id, p_period_start, 0, now())
    ON CONFLICT (user_id) DO NOTHING;

    SELECT uc.period_start, uc.offers_generated
      INTO v_period, v_count
      FROM usage_counters uc
     WHERE uc.user_id = p_user_id
       FOR UPDATE;

    IF v_period IS DISTINCT FROM p_period_start THEN
        UPDATE usage_counters uc
           SET period_start = p_period_start, offers_generated = 0, updated_at = now()
         WHERE uc.user_id = p_user_id;
        v_period := p_period_start;
        v_count := 0;
    END IF;

    IF p_limit IS NOT NULL AND v_count >= p_limit THEN
        RETURN QUERY SELECT false, v_count, v_period;
        RETURN;
    END IF;

    UPDATE usage_counters uc
       SET offers_generated = uc.offers_generated + 1, updated_at = now()
     WHERE uc.user_id = p_user_id
    RETURNING uc.offers_generated INTO v_count;

    RETURN QUERY SELECT true, v_count, v_period;
END;
$$;
"""

CHECK_AND_INCREMENT_DEVICE_USAGE_SQL = """
CREATE OR REPLACE FUNCTION check_and_increment_device_usage(
    p_user_id text,
    p_device_id text,
    p_limit integer,
    p_period_start date
)
RETURNS TABLE (allowed boolean, offers_generated integer, period_start date)
LANGUAGE plpgsql
AS $$
#variable_conflict use_column
DECLARE
    v_period date;
    v_count integer;
BEGIN
    INSERT INTO device_usage_counters (user_id, device_id, period_start, offers_generated, updated_at)
    VALUES (p_user_id, p_device_id, p_period_start, 0, now())
    ON CONFLICT (user_id, device_id) DO NOTHING;

    SELECT dc.period_start, dc.offers_generated
      INTO v_period, v_count
      FROM device_usage_counters dc
     WHERE dc.user_id = p_user_id AND dc.device_id = p_device_id
       FOR UPDATE;

    IF v_period IS DISTINCT FROM p_period_start THEN
        UPDATE device_usage_counters dc
           SET period_start = p_period_start, offers_generated = 0, updated_at = now()
         WHERE dc.user_id = p_user_id AND dc.device_id = p_device_id;
        v_period := p_period_start;
        v_count := 0;
    END IF;

    IF p_limit IS NOT NULL AND v_count >= p_limit THEN
        RETURN QUERY SELECT false, v_count, v_period;
        RETURN;
    END IF;

    UPDATE device_usage_counters dc
       SET offers_generated = dc.offers_generated + 1, updated_at = now()
     WHERE dc.user_id = p_user_id AND dc.device_id = p_device_id
    RETURNING dc.offers_generated INTO v_count;

    RETURN QUERY SELECT true, v_count, v_period;
END;
$$;
"""

CHECK_QUOTA_WITH_PENDING_SQL = """
CREATE OR REPLACE FUNCTION check_quota_with_pending(
    p_user_id text,
    p_limit integer,
    p_period_start date
)
RETURNS TABLE (allowed boolean, confirmed_count integer, pending_count integer, total_count integer)
LANGUAGE plpgsql
AS $$
#variable_conflict use_column
DECLARE
    v_period date;
    v_count integer;
    v_pending integer;
BEGIN
    INSERT INTO usage_counters (user_id, period_start, offers_generated, updated_at)
    VALUES (p_user_id, p_period_start, 0, now())
    ON CONFLICT (user_id) DO NOTHING;

    SELECT uc.period_start, uc.offers_generated
      INTO v_period, v_count
      FROM usage_counters uc
     WHERE uc.user_id = p_user_id
       FOR UPDATE;

    IF v_period IS DISTINCT FROM p_period_start THEN
        UPDATE usage_counters uc
           SET period_start = p_period_start, offers_generated = 0, updated_at = now()
         WHERE uc.user_id = p_user_id;
        v_count := 0;
    END IF;

    SELECT count(*)::integer
      INTO v_pending
      FROM pdf_jobs j
     WHERE j.user_id = p_user_id
       AND j.status IN ('pending', 'processing')
       AND j.payload->>'usagePeriodStart' = to_char(p_period_start, 'YYYY-MM-DD');

    RETURN QUERY SELECT
        (p_limit IS NULL OR v_count + v_pending < p_limit),
        v_count,
        v_pending,
        v_count + v_pending;
END;
$$;
"""

CHECK_DEVICE_QUOTA_WITH_PENDING_SQL = """
CREATE OR REPLACE FUNCTION check_device_quota_with_pending(
    p_user_id text,
    p_device_id text,
    p_limit integer,
    p_period_start date
)
RETURNS TABLE (allowed boolean, confirmed_count integer, pending_count integer, total_count integer)
LANGUAGE plpgsql
AS $$
#variable_conflict use_column
DECLARE
    v_period date;
    v_count integer;
    v_pending integer;
BEGIN
    INSERT INTO device_usage_counters (user_id, device_id, period_start, offers_generated, updated_at)
    VALUES (p_user_id, p_device_id, p_period_start, 0, now())
    ON CONFLICT (user_id, device_id) DO NOTHING;

    SELECT dc.period_start, dc.offers_generated
      INTO v_period, v_count
      FROM device_usage_counters dc
     WHERE dc.user_id = p_user_id AND dc.device_id = p_device_id
       FOR UPDATE;

    IF v_period IS DISTINCT FROM p_period_start THEN
        UPDATE device_usage_counters dc
           SET period_start = p_period_start, offers_generated = 0, updated_at = now()
         WHERE dc.user_id = p_user_id AND dc.device_id = p_device_id;
        v_count := 0;
    END IF;

    SELECT count(*)::integer
      INTO v_pending
      FROM pdf_jobs j
     WHERE j.user_id = p_user_id
       AND j.status IN ('pending', 'processing')
       AND j.payload->>'usagePeriodStart' = to_char(p_period_start, 'YYYY-MM-DD')
       AND j.payload->>'deviceId' = p_device_id;

    RETURN QUERY SELECT
        (p_limit IS NULL OR v_count + v_pending < p_limit),
        v_count,
        v_pending,
        v_count + v_pending;
END;
$$;
"""

ALL_PROCEDURES = {
    CHECK_AND_INCREMENT_USAGE: CHECK_AND_INCREMENT_USAGE_SQL,
    CHECK_AND_INCREMENT_DEVICE_USAGE: CHECK_AND_INCREMENT_DEVICE_USAGE_SQL,
    CHECK_QUOTA_WITH_PENDING: CHECK_QUOTA_WITH_PENDING_SQL,
    CHECK_DEVICE_QUOTA_WITH_PENDING: CHECK_DEVICE_QUOTA_WITH_PENDING_SQL,
}
