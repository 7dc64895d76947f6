import logging
import requests
from config import DUNE_API_URL, HTTP_TIMEOUT

logger = logging.getLogger(__name__)


class DuneClient:
    """Minimal Dune Analytics REST client. HTTP errors surface as requests exceptions."""

    def __init__(self, api_key, base_url=DUNE_API_URL, timeout=HTTP_TIMEOUT, session=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"X-DUNE-API-KEY": api_key})

    def _request(self, method, endpoint, **kwargs):
        url = f"{self.base_url}{endpoint}"
        response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        response.raise_for_status()
        return response

    # --- QUERIES ---
    def get_result_rows(self, query_id):
        data = self._request("GET", f"/v1/query/{query_id}/results").json()
        return (data.get("result") or {}).get("rows") or []

    def execute_query(self, query_id):
        """Refreshes a query so its results pick up new table contents."""
        data = self._request("POST", f"/v1/query/{query_id}/execute").json()
        logger.info(f"Query {query_id} execution: {data.get('execution_id')} ({data.get('state')})")
        return data

    # --- TABLES ---
    def create_table(self, namespace, table_name, schema, description="", is_private=False):
        """Creates the table if missing. Returns True when it already existed."""
        payload = {
            "namespace": namespace,
            "table_name": table_name,
            "description": description,
            "schema": schema,
            "is_private": is_private,
        }
        try:
            data = self._request("POST", "/v1/table/create", json=payload).json()
        except requests.HTTPError as e:
            if e.response is not None and e.response.status_code == 409:
                logger.info(f"Table {namespace}.{table_name} already exists.")
                return True
            raise
        existed = bool(data.get("already_existed"))
        logger.info(f"Table {namespace}.{table_name} {'already exists' if existed else 'created'}.")
        return existed

    def insert_ndjson(self, namespace, table_name, ndjson):
        headers = {"Content-Type": "application/x-ndjson"}
        data = self._request(
            "POST", f"/v1/table/{namespace}/{table_name}/insert", data=ndjson.encode("utf-8"), headers=headers
        ).json()
        return data

    def upload_csv(self, table_name, csv_data, description="", is_private=False):
        """Replaces the whole table with csv_data."""
        payload = {
            "data": csv_data,
            "description": description,
            "table_name": table_name,
            "is_private": is_private,
        }
        return self._request("POST", "/v1/table/upload/csv", json=payload).json()
