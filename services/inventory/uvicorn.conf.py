import os

import uvicorn

app = "services.inventory.main:app"
host = "0.0.0.0"
port = int(os.getenv("PORT", "9001"))
workers = int(os.getenv("UVICORN_WORKERS", str(max(2, (os.cpu_count() or 1)))))
loop = "uvloop"  # requires uvicorn[standard]
http = "h11"
log_level = os.getenv("LOG_LEVEL", "info")

if __name__ == "__main__":
    uvicorn.run(app, host=host, port=port, workers=workers, loop=loop, http=http, log_level=log_level)
