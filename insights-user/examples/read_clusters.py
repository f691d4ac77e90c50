"""
Report on issue clusters stored in SQL Server.

Usage:
    python read_clusters.py
    python read_clusters.py --status active --priority critical
    python read_clusters.py --min-severity 75 --samples
    python read_clusters.py --export clusters_report.csv
"""

import os
import argparse
import pymssql
import pandas as pd
from dotenv import load_dotenv

load_dotenv()


def get_connection():
    """Create SQL Server connection."""
    return pymssql.connect(
        server=os.getenv("SQL_SERVER_HOST"),
        port=int(os.getenv("SQL_SERVER_PORT", 1433)),
        database=os.getenv("SQL_SERVER_DATABASE"),
        user=os.getenv("SQL_SERVER_USERNAME"),
        password=os.getenv("SQL_SERVER_PASSWORD"),
    )


def get_clusters(conn, status=None, priority=None, min_severity=None, unalerted=False):
    """Query clusters with optional filters, most severe first."""
    query = """
        SELECT
            cluster_id,
            title,
            description,
            aggregate_severity,
            priority,
            status,
            total_items,
            avg_severity,
            max_severity,
            trend,
            alert_sent,
            created_at,
            updated_at
        FROM feedback_engine.clusters
        WHERE 1=1
    """
    params = []

    if status:
        query += " AND status = %s"
        params.append(status)

    if priority:
        query += " AND priority = %s"
        params.append(priority)

    if min_severity is not None:
        query += " AND aggregate_severity >= %s"
        params.append(min_severity)

    if unalerted:
        query += " AND alert_sent = 0"

    query += " ORDER BY aggregate_severity DESC, total_items DESC"

    return pd.read_sql(query, conn, params=params if params else None)


def get_cluster_feedback_samples(conn, cluster_id, limit=5):
    """Get the most severe feedback of a cluster."""
    query = """
        SELECT TOP %s
            feedback_id,
            content,
            source,
            normalized_severity,
            created_at
        FROM feedback_engine.feedback_items
        WHERE cluster_id = %s
        ORDER BY normalized_severity DESC
    """
    return pd.read_sql(query, conn, params=(limit, cluster_id))


def main():
    parser = argparse.ArgumentParser(description="Read issue clusters")
    parser.add_argument("--status", help="Filter by status (active/reviewed/in_progress/resolved/wont_fix/rejected)")
    parser.add_argument("--priority", help="Filter by priority (critical/high/medium/low)")
    parser.add_argument("--min-severity", type=int, help="Minimum aggregate severity")
    parser.add_argument("--unalerted", action="store_true", help="Only clusters without a sent alert")
    parser.add_argument("--export", help="Export to CSV file")
    parser.add_argument("--samples", action="store_true", help="Show sample feedback for each cluster")
    args = parser.parse_args()

    conn = get_connection()

    print("Fetching clusters...")
    df = get_clusters(
        conn,
        status=args.status,
        priority=args.priority,
        min_severity=args.min_severity,
        unalerted=args.unalerted,
    )

    print(f"\nFound {len(df)} clusters\n")
    if df.empty:
        conn.close()
        return

    print("=" * 80)
    print(f"Total feedback items clustered: {df['total_items'].sum():,}")
    print(f"Average aggregate severity: {df['aggregate_severity'].mean():.1f}")
    print("Clusters per priority:")
    print(df["priority"].value_counts().to_string())
    print("Clusters per trend:")
    print(df["trend"].value_counts().to_string())
    print("=" * 80)

    print("\nTop 10 Clusters by Severity:\n")
    top_clusters = df.head(10)[
        ["cluster_id", "title", "aggregate_severity", "priority", "total_items", "trend"]
    ]
    print(top_clusters.to_string(index=False))

    if args.samples:
        print("\n" + "=" * 80)
        print("Sample Feedback for Top Clusters:\n")
        for _, row in top_clusters.head(5).iterrows():
            print(f"\n--- {row['title']} (severity {row['aggregate_severity']}, {row['total_items']} items) ---")
            samples = get_cluster_feedback_samples(conn, row["cluster_id"])
            for _, sample in samples.iterrows():
                print(f"  - [{sample['source']} {sample['normalized_severity']}] {sample['content'][:100]}...")

    if args.export:
        df.to_csv(args.export, index=False)
        print(f"\nExported to {args.export}")

    conn.close()


if __name__ == "__main__":
    main()
