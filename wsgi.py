# Process entry point: gunicorn -c gunicorn.config.py wsgi:app
import gevent.monkey
gevent.monkey.patch_all()

import os
import atexit
from app import create_app
from accrual.scheduler import AccrualScheduler


# ----------------------
# Create app instance
# ----------------------
app = create_app()

# ----------------------
# Periodic accrual trigger
# ----------------------
scheduler = None
if app.config.get("SCHEDULER_ENABLED", True):
    scheduler = AccrualScheduler(app).start()
    atexit.register(scheduler.stop)


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    app.run(debug=app.config.get("DEBUG", False), host="0.0.0.0", port=port, use_reloader=False)
