#!/usr/bin/env python3
# Bus Tracker arrival pages for the stop display.

import logging
import os
from typing import Tuple

from dotenv import load_dotenv
from flask import Flask, make_response, render_template, Response

from bustime import (
    ArrivalCache,
    ArrivalLookup,
    BUSTIME_BASE,
    BustimeClient,
    FRESHNESS_WINDOW_SEC,
    RESULT_DELIMITER,
    StopBlocklist,
)

load_dotenv()

log = logging.getLogger("bustime_proxy")
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


class MissingConfig(Exception):
    def __init__(self, message: str):
        super().__init__(message)


BUSPLUG_API_KEY = os.getenv("BUSPLUG_API_KEY")
if not BUSPLUG_API_KEY:
    raise MissingConfig("BUSPLUG_API_KEY is not set")

BUSTIME_BASE_URL = os.getenv("BUSTIME_BASE_URL", BUSTIME_BASE)
BUSTIME_CONNECT_TIMEOUT_SEC = env_float("BUSTIME_CONNECT_TIMEOUT_SEC", 3.0)
BUSTIME_READ_TIMEOUT_SEC = env_float("BUSTIME_READ_TIMEOUT_SEC", 7.0)

APP_HOST = os.getenv("APP_HOST", "0.0.0.0")
APP_PORT = env_int("APP_PORT", 8080)

client = BustimeClient(
    BUSPLUG_API_KEY,
    base_url=BUSTIME_BASE_URL,
    timeout=(BUSTIME_CONNECT_TIMEOUT_SEC, BUSTIME_READ_TIMEOUT_SEC),
)
arrivals = ArrivalLookup(
    client.fetch_predictions,
    ArrivalCache(),
    StopBlocklist(),
    freshness_window=FRESHNESS_WINDOW_SEC,
)
log.info(
    "Bus Tracker endpoint %s (timeouts %.1fs/%.1fs)",
    BUSTIME_BASE_URL,
    BUSTIME_CONNECT_TIMEOUT_SEC,
    BUSTIME_READ_TIMEOUT_SEC,
)

app = Flask(__name__)


def split_result(result: str) -> Tuple[str, str]:
    if RESULT_DELIMITER in result:
        stop_name, prediction = result.split(RESULT_DELIMITER, 1)
        return stop_name, prediction
    return result, ""


@app.after_request
def add_common_headers(resp: Response) -> Response:
    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers.setdefault("Referrer-Policy", "no-referrer")
    resp.headers.setdefault("X-Frame-Options", "DENY")
    return resp


@app.route("/<int:stop_id>", methods=["GET"])
def stop_page(stop_id: int) -> Response:
    stop_name, prediction = split_result(arrivals.lookup(str(stop_id)))
    resp = make_response(
        render_template(
            "index.html",
            stop_id=stop_id,
            stop_name=stop_name,
            prediction=prediction,
        )
    )
    resp.headers["Content-Type"] = "text/html; charset=utf-8"
    resp.headers["Cache-Control"] = "no-store"
    return resp


# Plain text for the microcontroller display.
@app.route("/cta/<int:stop_id>", methods=["GET"])
def stop_text(stop_id: int) -> Response:
    result = arrivals.lookup(str(stop_id))
    log.debug("Display request for stop %s: %s", stop_id, result)
    resp = make_response(result)
    resp.headers["Content-Type"] = "text/plain; charset=utf-8"
    resp.headers["Cache-Control"] = "no-store"
    return resp


if __name__ == "__main__":
    app.run(host=APP_HOST, port=APP_PORT, threaded=True)
