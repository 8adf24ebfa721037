from dotenv import load_dotenv
import logging

# Load environment variables from .env file
load_dotenv()

# The level comes from LOG_LEVEL once create_app has loaded the config.
logging.basicConfig(
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

from soc_chat_backend import create_app
from soc_chat_backend.services import start_background_services, stop_background_services

app = create_app()


def main() -> None:
    if app.config.get("BACKGROUND_SERVICES_ENABLED"):
        # Connectivity monitor, scheduled-message runner and cleanup sweep
        start_background_services()

    try:
        app.run(host="0.0.0.0", port=app.config.get("PORT", 5000), debug=False)
    finally:
        stop_background_services()


if __name__ == "__main__":
    main()
