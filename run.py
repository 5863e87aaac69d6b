from backend.main import app
import uvicorn
import os

if __name__ == "__main__":
    port = int(os.environ.get("SURVEY_RELAY_PORT", 3000))
    # Default to loopback; set SURVEY_RELAY_HOST=0.0.0.0 when running behind nginx/Docker
    host = os.environ.get("SURVEY_RELAY_HOST", "127.0.0.1")
    uvicorn.run(app, host=host, port=port, proxy_headers=True)
