"""
Mileage and reimbursement
=========================
Per-employee distance totals for a period and the tiered reimbursement:
the first `threshold_km` business kilometres of the calendar year are paid
at `rate_per_km`, the rest at `rate_after_threshold`.

Only reimbursable trips count as business kilometres: business, driving,
not on a company vehicle that day, and not a carpool passenger.
"""

import logging
from datetime import date, timedelta

import pandas as pd

from database import (
    get_connection, get_placeholder, fetch_dict, execute_insert_returning_id,
    transaction, format_date,
)
from models import MileageSummary

logger = logging.getLogger(__name__)


# ==========================================
# RATES
# ==========================================

def add_rate(rate_per_km, effective_from, threshold_km=None, rate_after_threshold=None,
             effective_to=None, rate_source='custom'):
    if rate_per_km is None or float(rate_per_km) <= 0:
        raise ValueError(f"rate_per_km must be positive: {rate_per_km}")
    if (threshold_km is None) != (rate_after_threshold is None):
        raise ValueError("threshold_km and rate_after_threshold go together")
    if effective_to is not None and format_date(effective_to) < format_date(effective_from):
        raise ValueError("effective_to is before effective_from")

    with transaction() as conn:
        c = conn.cursor()
        return execute_insert_returning_id(c, f"""
            INSERT INTO reimbursement_rates
            (rate_per_km, threshold_km, rate_after_threshold, effective_from, effective_to, rate_source)
            VALUES ({get_placeholder(6)})
        """, (float(rate_per_km), threshold_km, rate_after_threshold,
              format_date(effective_from), format_date(effective_to), rate_source))


def get_effective_rate(on_date):
    """
    Rate in force on a date (latest effective_from wins). Falls back to the
    most recent rate on record; None when no rate was ever configured.
    """
    day = format_date(on_date)
    ph = get_placeholder(1)
    conn = get_connection()
    try:
        c = conn.cursor()
        c.execute(f"""
            SELECT * FROM reimbursement_rates
            WHERE effective_from <= {ph}
              AND (effective_to IS NULL OR effective_to >= {ph})
            ORDER BY effective_from DESC, id DESC
            LIMIT 1
        """, (day, day))
        rate = fetch_dict(c)
        if rate is None:
            c.execute("SELECT * FROM reimbursement_rates ORDER BY effective_from DESC, id DESC LIMIT 1")
            rate = fetch_dict(c)
            if rate is not None:
                logger.warning("⚠️ No rate in force on %s, using the one from %s", day, rate['effective_from'])
        return rate
    finally:
        conn.close()


def compute_tiered_reimbursement(business_km, ytd_before, rate):
    """
    Tiered amount for `business_km` when `ytd_before` km were already paid
    this year. Flat when the rate has no threshold.
    """
    rate_per_km = float(rate['rate_per_km'])
    threshold = rate.get('threshold_km')
    rate_after = rate.get('rate_after_threshold')

    if threshold is None or rate_after is None:
        return round(business_km * rate_per_km, 2)

    base = max(0.0, min(business_km, float(threshold) - ytd_before))
    reduced = max(0.0, business_km - base)
    return round(base * rate_per_km + reduced * float(rate_after), 2)


# ==========================================
# SUMMARY
# ==========================================

def _load_trips(employee_id, start, end_exclusive):
    ph = get_placeholder(1)
    query = f"""
        SELECT t.id, t.classification, t.transport_mode,
               COALESCE(t.road_distance_km, t.distance_km) AS distance_km,
               cm.role AS carpool_role,
               CASE WHEN EXISTS (
                   SELECT 1 FROM vehicle_periods vp
                   WHERE vp.employee_id = t.employee_id
                     AND vp.vehicle_type = 'company'
                     AND vp.started_at <= DATE(t.started_at)
                     AND (vp.ended_at IS NULL OR vp.ended_at >= DATE(t.started_at))
               ) THEN 1 ELSE 0 END AS company_vehicle
        FROM trips t
        LEFT JOIN carpool_members cm ON cm.trip_id = t.id
        WHERE t.employee_id = {ph}
          AND t.started_at >= {ph}
          AND t.started_at < {ph}
    """
    conn = get_connection()
    try:
        df = pd.read_sql(query, conn, params=(employee_id, format_date(start), format_date(end_exclusive)))
    finally:
        conn.close()

    df['reimbursable'] = (
        (df['classification'] == 'business')
        & (df['transport_mode'] == 'driving')
        & (df['company_vehicle'] == 0)
        & (df['carpool_role'].isna() | (df['carpool_role'] == 'driver'))
    )
    return df


def summarize(employee_id, period_start, period_end):
    """
    Mileage summary for [period_start, period_end] (both inclusive dates).

    Returns:
        MileageSummary; no_rate_configured is True (and the amount 0) when
        there is no reimbursement rate at all.
    """
    period_start = date.fromisoformat(format_date(period_start))
    period_end = date.fromisoformat(format_date(period_end))
    end_exclusive = period_end + timedelta(days=1)

    df = _load_trips(employee_id, period_start, end_exclusive)
    business = df[df['reimbursable']]
    personal = df[df['classification'] == 'personal']
    business_km = float(business['distance_km'].sum())

    ytd = _load_trips(employee_id, date(period_end.year, 1, 1), end_exclusive)
    ytd_km = float(ytd.loc[ytd['reimbursable'], 'distance_km'].sum())
    ytd_before = ytd_km - business_km

    rate = get_effective_rate(period_end)
    if rate is None:
        logger.warning("⚠️ No reimbursement rate configured")
        reimbursement = 0.0
    else:
        reimbursement = compute_tiered_reimbursement(business_km, ytd_before, rate) if business_km > 0 else 0.0

    return MileageSummary(
        total_distance_km=round(float(df['distance_km'].sum()), 3),
        business_distance_km=round(business_km, 3),
        personal_distance_km=round(float(personal['distance_km'].sum()), 3),
        trip_count=len(df),
        business_trip_count=len(business),
        personal_trip_count=len(personal),
        estimated_reimbursement=reimbursement,
        rate_per_km_used=float(rate['rate_per_km']) if rate else 0.0,
        rate_source=(rate.get('rate_source') or 'custom') if rate else 'none',
        ytd_business_km=round(ytd_km, 3),
        no_rate_configured=rate is None,
    )
