from .format_detector import FORMAT_TAGS, FormatMatch, detect, detect_broker_format
from .instrument_classifier import InstrumentInfo, classify, looks_like_cusip, option_from_columns
