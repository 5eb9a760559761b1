from __future__ import annotations

import enum
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

import pytz
from botocore.exceptions import BotoCoreError, ClientError

from capprobe.config import BOTO3_CONFIG
from capprobe.errors import OptionalFeatureUnavailable


MAX_POLL_ATTEMPTS = 10
POLL_DELAY_SECONDS = 2.0
LOOKBACK_DAYS = 7
ROW_LIMIT = 200

_FAILED_STATUSES = ("FAILED", "CANCELLED", "TIMED_OUT")


class QueryState(str, enum.Enum):
    SUBMITTED = "SUBMITTED"
    POLLING = "POLLING"
    FINISHED = "FINISHED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"


TERMINAL_STATES = (QueryState.FINISHED, QueryState.FAILED, QueryState.TIMED_OUT)


class QueryPoller:
    """
    Bounded wait for an asynchronous query job.

    SUBMITTED -> POLLING -> FINISHED | FAILED | TIMED_OUT. Each `step()` fetches
    the job status once; after `max_attempts` non-terminal answers the poller
    gives up with TIMED_OUT. There is no unbounded loop anywhere.
    """

    def __init__(
        self,
        fetch_status: Callable[[], dict],
        *,
        max_attempts: int = MAX_POLL_ATTEMPTS,
        delay: float = POLL_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._fetch_status = fetch_status
        self.max_attempts = max_attempts
        self.delay = delay
        self._sleep = sleep
        self.state = QueryState.SUBMITTED
        self.attempts = 0
        self.last_response: Optional[dict] = None

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def step(self) -> QueryState:
        if self.done:
            return self.state
        self.state = QueryState.POLLING
        self.attempts += 1
        self.last_response = self._fetch_status() or {}
        status = self.last_response.get("QueryStatus")
        if status == "FINISHED":
            self.state = QueryState.FINISHED
        elif status in _FAILED_STATUSES:
            self.state = QueryState.FAILED
        elif self.attempts >= self.max_attempts:
            self.state = QueryState.TIMED_OUT
        return self.state

    def wait(self) -> QueryState:
        while self.step() is QueryState.POLLING:
            self._sleep(self.delay)
        return self.state


def build_access_denied_query(event_data_store_arn: str, start: datetime, end: datetime, limit: int = ROW_LIMIT) -> str:
    store_id = event_data_store_arn.rsplit("/", 1)[-1]
    fmt = "%Y-%m-%d %H:%M:%S"
    return (
        "SELECT eventTime, eventSource, eventName, errorCode, errorMessage, "
        "userIdentity.type, userIdentity.arn "
        f"FROM {store_id} "
        "WHERE errorCode LIKE '%AccessDenied%' "
        f"AND eventTime > '{start.strftime(fmt)}' AND eventTime < '{end.strftime(fmt)}' "
        f"ORDER BY eventTime DESC LIMIT {int(limit)}"
    )


def query_access_denied_events(
    session,
    region: str,
    *,
    lookback_days: int = LOOKBACK_DAYS,
    max_attempts: int = MAX_POLL_ATTEMPTS,
    delay: float = POLL_DELAY_SECONDS,
    limit: int = ROW_LIMIT,
    sleep: Callable[[float], None] = time.sleep,
    now: Optional[datetime] = None,
) -> dict:
    """
    Recent AccessDenied events from the region's first CloudTrail Lake store.

    Raises OptionalFeatureUnavailable when Lake is not usable here (no stores,
    no permission, query rejected, or it did not finish in time).
    """
    try:
        cloudtrail = session.client("cloudtrail", region_name=region, config=BOTO3_CONFIG)
        stores = cloudtrail.list_event_data_stores().get("EventDataStores") or []
    except (ClientError, BotoCoreError) as e:
        raise OptionalFeatureUnavailable(f"CloudTrail Lake unavailable in {region}: {e}") from e
    if not stores or not stores[0].get("EventDataStoreArn"):
        raise OptionalFeatureUnavailable(f"No CloudTrail Lake event data store in {region}")

    store_arn = stores[0]["EventDataStoreArn"]
    end = now or datetime.now(pytz.utc)
    start = end - timedelta(days=lookback_days)
    statement = build_access_denied_query(store_arn, start, end, limit)

    try:
        query_id = cloudtrail.start_query(QueryStatement=statement).get("QueryId")
    except (ClientError, BotoCoreError) as e:
        raise OptionalFeatureUnavailable(f"Cannot start CloudTrail Lake query in {region}: {e}") from e
    if not query_id:
        raise OptionalFeatureUnavailable(f"CloudTrail Lake returned no query id in {region}")

    poller = QueryPoller(
        lambda: cloudtrail.get_query_results(QueryId=query_id),
        max_attempts=max_attempts,
        delay=delay,
        sleep=sleep,
    )
    try:
        state = poller.wait()
    except (ClientError, BotoCoreError) as e:
        raise OptionalFeatureUnavailable(f"CloudTrail Lake query {query_id} failed: {e}") from e
    if state is not QueryState.FINISHED:
        raise OptionalFeatureUnavailable(f"CloudTrail Lake query {query_id} ended as {state.value}")

    response = poller.last_response or {}
    rows = list(response.get("QueryResultRows") or [])
    next_token = response.get("NextToken")
    try:
        while next_token:
            page = cloudtrail.get_query_results(QueryId=query_id, NextToken=next_token)
            rows.extend(page.get("QueryResultRows") or [])
            next_token = page.get("NextToken")
    except (ClientError, BotoCoreError) as e:
        raise OptionalFeatureUnavailable(f"Cannot read CloudTrail Lake results for {query_id}: {e}") from e

    return {
        "EventDataStoreArn": store_arn,
        "QueryId": query_id,
        "QueryStatement": statement,
        "QueryStatus": response.get("QueryStatus"),
        "QueryStatistics": response.get("QueryStatistics"),
        "QueryResultRows": rows,
    }
