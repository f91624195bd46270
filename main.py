from app.main import app
import os

if __name__ == "__main__":
    # Importing app.main prepares the data directories and the audit schema and
    # registers the workflow service. PORT comes from the hosting environment.
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, threaded=True)
