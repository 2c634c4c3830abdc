from sqlalchemy import text

from models import client, payment, scheduling  # noqa: F401
from models.base import Base, get_engine


def init_db(engine=None) -> None:
    if engine is None:
        engine = get_engine()

    # Create all ORM tables (includes the partial unique slot index)
    Base.metadata.create_all(bind=engine)

    with engine.begin() as conn:
        # 1) Index: availability and overlap lookups go by trainer + time
        conn.execute(
            text(
                """
                CREATE INDEX IF NOT EXISTS idx_training_session_trainer_start
                ON training_session(trainer_id, start_time);
                """
            )
        )

        if engine.dialect.name != "postgresql":
            return

        # 2) Exclusion constraint: no two blocking sessions of one trainer overlap
        conn.execute(text("CREATE EXTENSION IF NOT EXISTS btree_gist;"))
        conn.execute(
            text(
                """
                DO $$
                BEGIN
                    IF NOT EXISTS (
                        SELECT 1 FROM pg_constraint
                        WHERE conname = 'ex_training_session_no_overlap'
                    ) THEN
                        ALTER TABLE training_session
                            ADD CONSTRAINT ex_training_session_no_overlap
                            EXCLUDE USING gist (
                                trainer_id WITH =,
                                tsrange(start_time, end_time) WITH &&
                            )
                            WHERE (status IN ('scheduled', 'completed', 'pending_approval'));
                    END IF;
                END;
                $$;
                """
            )
        )

        # 3) View: pack balance recomputed from the sessions that consume it
        conn.execute(
            text(
                """
                CREATE OR REPLACE VIEW session_pack_balance_view AS
                SELECT
                    p.pack_id,
                    p.client_id,
                    p.trainer_id,
                    p.service_type_id,
                    p.total_sessions,
                    p.sessions_remaining,
                    p.total_sessions - COUNT(s.session_id) AS sessions_available
                FROM session_pack p
                LEFT JOIN training_session s
                    ON s.session_pack_id = p.pack_id
                   AND (
                        s.status IN ('scheduled', 'completed', 'no-show')
                        OR (
                            s.status IN ('cancelled_late', 'cancelled_early')
                            AND s.cancellation_reason = 'penalty'
                        )
                   )
                GROUP BY p.pack_id;
                """
            )
        )


if __name__ == "__main__":
    init_db()
    print("Database tables + constraints + view created.")
