import logging

from petcare.config import load_settings
from petcare.webapp import create_app

settings = load_settings()
logging.basicConfig(
    level=settings["LOG_LEVEL"],
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app(settings)

if __name__ == "__main__":
    app.run(debug=True)
