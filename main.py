import json
import sys

from config import load_config, validate_config
from utils.logger import setup_logging, log_info, log_error
from menus.session_menu import session_menu

if __name__ == "__main__":
    setup_logging()

    try:
        config = load_config()
    except FileNotFoundError as e:
        log_error(f"Config file not found: {e}")
        log_error("Please create config.json with at least spotify_client_id.")
        sys.exit(1)
    except json.JSONDecodeError as e:
        log_error(f"Config file contains invalid JSON: {e}")
        sys.exit(1)

    is_valid, errors = validate_config(config)
    if not is_valid:
        for err in errors:
            log_error(err)
        sys.exit(1)

    session_menu(config)
    log_info("Exiting program...")
