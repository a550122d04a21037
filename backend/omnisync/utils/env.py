def load_env_file() -> None:
    """Load environment variables from a local .env file if not already set.

    WHAT:
        Loads variables from `.env` into os.environ without overwriting
        anything that is already exported.
    WHY:
        Developers keep platform client secrets and the token encryption key in
        a local `.env`; production injects real environment variables, which
        must always win.
    """
    import logging
    from dotenv import load_dotenv

    logger = logging.getLogger(__name__)

    loaded = load_dotenv(override=False)

    if loaded:
        logger.info("[ENV] Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("[ENV] No local .env file found or loaded")
