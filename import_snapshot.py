#!/usr/bin/env python3
"""
Import script to populate PostgreSQL with an event exported as JSON.

Usage: python import_snapshot.py export.json [--current]
"""
import argparse
import json
import os
import sys

import psycopg2

from heatboard.datastore_pg import create_tables
from heatboard.records import Snapshot


def import_event(conn, snapshot, name=None, current=False):
    """Upsert the event row; optionally make it the current event."""
    with conn.cursor() as cur:
        if current:
            cur.execute("UPDATE events SET is_current = FALSE WHERE id <> %s", (snapshot.event_id,))
        cur.execute("""
            INSERT INTO events (id, name, is_current)
            VALUES (%s, %s, %s)
            ON CONFLICT (id) DO UPDATE SET
                name = COALESCE(EXCLUDED.name, events.name),
                is_current = EXCLUDED.is_current OR events.is_current
        """, (snapshot.event_id, name, current))
    print(f"Imported event {snapshot.event_id}")


def import_people_and_schedule(conn, snapshot):
    """Pilots, channels, rounds and races with their channel assignments"""
    event = snapshot.event_id
    with conn.cursor() as cur:
        for pilot in snapshot.pilots:
            cur.execute("""
                INSERT INTO pilots (id, event_id, name, source_id) VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    event_id = EXCLUDED.event_id,
                    name = EXCLUDED.name,
                    source_id = EXCLUDED.source_id
            """, (pilot.id, event, pilot.name, pilot.source_id))

        for channel in snapshot.channels:
            cur.execute("""
                INSERT INTO channels (id, short_band, number, color) VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    short_band = EXCLUDED.short_band,
                    number = EXCLUDED.number,
                    color = EXCLUDED.color
            """, (channel.id, channel.short_band, channel.number, channel.color))

        for rnd in snapshot.rounds:
            cur.execute("""
                INSERT INTO rounds (id, event_id, name, round_order, event_type) VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    event_id = EXCLUDED.event_id,
                    name = EXCLUDED.name,
                    round_order = EXCLUDED.round_order,
                    event_type = EXCLUDED.event_type
            """, (rnd.id, event, rnd.name, rnd.order, rnd.event_type))

        assignments = 0
        for race in snapshot.races:
            cur.execute("""
                INSERT INTO races (
                    id, event_id, round_id, race_order, race_number, source_id,
                    start, "end", target_laps, valid
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    event_id = EXCLUDED.event_id,
                    round_id = EXCLUDED.round_id,
                    race_order = EXCLUDED.race_order,
                    race_number = EXCLUDED.race_number,
                    source_id = EXCLUDED.source_id,
                    start = EXCLUDED.start,
                    "end" = EXCLUDED."end",
                    target_laps = EXCLUDED.target_laps,
                    valid = EXCLUDED.valid
            """, (
                race.id,
                event,
                race.round_id,
                race.race_order,
                race.race_number,
                race.source_id,
                race.start,
                race.end,
                race.target_laps,
                race.valid,
            ))
            # Channel assignments are replaced wholesale per race
            cur.execute("DELETE FROM pilot_channels WHERE race_id = %s", (race.id,))
            for slot, pc in enumerate(race.pilot_channels):
                cur.execute("""
                    INSERT INTO pilot_channels (id, race_id, pilot_id, channel_id, slot)
                    VALUES (%s, %s, %s, %s, %s)
                """, (pc.id or f"{race.id}:{slot}", race.id, pc.pilot_id, pc.channel_id, slot))
                assignments += 1
    print(f"Imported {len(snapshot.pilots)} pilots, {len(snapshot.races)} races, {assignments} channel assignments")


def import_timing(conn, snapshot):
    """Detections and laps"""
    with conn.cursor() as cur:
        for det in snapshot.detections:
            cur.execute("""
                INSERT INTO detections (id, race_id, pilot_id, is_holeshot, valid, time)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    race_id = EXCLUDED.race_id,
                    pilot_id = EXCLUDED.pilot_id,
                    is_holeshot = EXCLUDED.is_holeshot,
                    valid = EXCLUDED.valid,
                    time = EXCLUDED.time
            """, (det.id, det.race_id, det.pilot_id, det.is_holeshot, det.valid, det.time))

        for lap in snapshot.laps:
            cur.execute("""
                INSERT INTO laps (id, race_id, detection_id, lap_number, length_seconds, start_time, end_time)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    race_id = EXCLUDED.race_id,
                    detection_id = EXCLUDED.detection_id,
                    lap_number = EXCLUDED.lap_number,
                    length_seconds = EXCLUDED.length_seconds,
                    start_time = EXCLUDED.start_time,
                    end_time = EXCLUDED.end_time
            """, (
                lap.id,
                lap.race_id,
                lap.detection_id,
                lap.lap_number,
                lap.length_seconds,
                lap.start_time,
                lap.end_time,
            ))
    print(f"Imported {len(snapshot.detections)} detections and {len(snapshot.laps)} laps")


def import_kv(conn, snapshot):
    with conn.cursor() as cur:
        for entry in snapshot.kv_entries:
            cur.execute("""
                INSERT INTO client_kv (event_id, namespace, key, value)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (event_id, namespace, key) DO UPDATE SET
                    value = EXCLUDED.value,
                    updated_at = now()
            """, (entry.event_id or snapshot.event_id, entry.namespace, entry.key, entry.value))
    print(f"Imported {len(snapshot.kv_entries)} key-value entries")


def main(argv=None):
    """Main import function"""
    parser = argparse.ArgumentParser(description="Import an exported event into PostgreSQL")
    parser.add_argument("path", help="JSON export with pilots, channels, rounds, races, laps, detections and kv")
    parser.add_argument("--name", default=None, help="Event display name")
    parser.add_argument("--current", action="store_true", help="Mark the imported event as current")
    args = parser.parse_args(argv)

    database_url = os.environ.get('DATABASE_URL')
    if not database_url:
        print("ERROR: DATABASE_URL environment variable not set")
        return 1

    print(f"Loading data from {args.path}...")
    with open(args.path, encoding="utf-8") as fh:
        snapshot = Snapshot.from_dict(json.load(fh))
    if not snapshot.event_id:
        print("ERROR: export has no event id")
        return 1

    conn = None
    try:
        conn = psycopg2.connect(database_url)
        print("Connected to PostgreSQL database")

        create_tables(conn)
        print("Database schema ready")

        # One transaction for the whole event
        import_event(conn, snapshot, name=args.name, current=args.current)
        import_people_and_schedule(conn, snapshot)
        import_timing(conn, snapshot)
        import_kv(conn, snapshot)
        conn.commit()

        print("\nImport completed successfully!")
        print(f"Snapshot version: {snapshot.version}")
        return 0
    except psycopg2.Error as e:
        if conn is not None:
            conn.rollback()
        print(f"Error during import: {e}")
        return 1
    finally:
        if conn is not None:
            conn.close()


if __name__ == "__main__":
    sys.exit(main())
