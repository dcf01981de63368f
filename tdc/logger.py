import logging


def setup_logging(level="INFO"):
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO),
                        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s')


def get_logger(name="tdc"):
    if name != "tdc" and not name.startswith("tdc."):
        name = f"tdc.{name}"
    return logging.getLogger(name)
