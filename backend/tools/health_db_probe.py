import os
from sqlalchemy import inspect, text
from sqlalchemy.engine.url import make_url

from payrecon import create_app
from payrecon.extensions import db

EXPECTED_TABLES = ("payments", "payment_logs", "callback_events")


def _safe_uri(uri: str) -> str:
    if not uri:
        return "unknown"
    try:
        return make_url(uri).render_as_string(hide_password=True)
    except Exception:
        return "unknown"


def main():
    app = create_app()
    with app.app_context():
        uri = app.config.get("SQLALCHEMY_DATABASE_URI") or ""
        print("PAYRECON_ENV:", (os.getenv("PAYRECON_ENV") or "dev").strip().lower())
        print("SQLALCHEMY_DATABASE_URI:", _safe_uri(uri))
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            print("SELECT 1: success")
        except Exception as e:
            print("SELECT 1: fail")
            msg = str(e)
            if msg:
                msg = (msg[:300] + "...") if len(msg) > 300 else msg
                print("error:", msg)
            return
        tables = set(inspect(db.engine).get_table_names())
        for name in EXPECTED_TABLES:
            print(f"table {name}:", "present" if name in tables else "missing")


if __name__ == "__main__":
    main()
