"""
외부 스프레드시트 연동.

- SheetClient: Apps Script 웹 앱(getSources / getMembers / syncCommit)과 통신
- read_workbook / read_csv: 업로드된 .xlsx / .csv 파일을 시트 이름별 표로 변환
"""
import csv
import io
import logging
import zipfile

import requests
from openpyxl import load_workbook

from onepass import config
from onepass.errors import InvalidCommand, SheetUnavailable

logger = logging.getLogger("onepass.sheets")

CENTRAL_HEADER = [
    "Member ID", "Full Name", "Role", "Status", "Photo URL",
    "Wallet Balance", "Outstanding Fines", "Reward Points",
]


class SheetClient:
    def __init__(self, url: str, api_key: str | None = None, timeout: float | None = None,
                 session: requests.Session | None = None):
        if not url:
            raise SheetUnavailable("Spreadsheet endpoint is not configured.")
        self.url = url
        self.api_key = api_key
        self.timeout = config.SHEET_TIMEOUT_SECONDS if timeout is None else timeout
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, cfg):
        return cls(cfg.sheet_url, cfg.sheet_api_key)

    def _unwrap(self, response, action):
        try:
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("Sheet %s failed: %s", action, e)
            raise SheetUnavailable(f"Spreadsheet {action} failed: {e}")
        if not isinstance(payload, dict) or not payload.get("success"):
            error = payload.get("error") if isinstance(payload, dict) else "malformed response"
            logger.warning("Sheet %s rejected: %s", action, error)
            raise SheetUnavailable(f"Spreadsheet {action} rejected: {error}")
        return payload

    def _get(self, action):
        params = {"action": action}
        if self.api_key:
            params["key"] = self.api_key
        try:
            response = self.session.get(self.url, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("Sheet %s unreachable: %s", action, e)
            raise SheetUnavailable(f"Spreadsheet endpoint unreachable: {e}")
        return self._unwrap(response, action)

    def fetch_sources(self, names=None) -> dict:
        """{시트 이름: [헤더, 행...]}. names가 있으면 그 순서대로, 없는 시트는 제외"""
        data = self._get("getSources").get("data") or {}
        if not isinstance(data, dict):
            raise SheetUnavailable("Spreadsheet getSources returned malformed data.")
        names = config.SYNC_SOURCES if names is None else names
        return {name: data[name] for name in names if name in data}

    def fetch_members(self) -> list:
        """중앙 DB 시트 (헤더 포함 2차원 배열)"""
        data = self._get("getMembers").get("data") or []
        if not isinstance(data, list):
            raise SheetUnavailable("Spreadsheet getMembers returned malformed data.")
        return data

    def push_members(self, members) -> dict:
        rows = [
            [m.id, m.name, m.role.value, m.status.value, m.photo_url or "",
             m.wallet_balance, m.outstanding_fines, m.reward_points]
            for m in members
        ]
        body = {"action": "syncCommit", "header": CENTRAL_HEADER, "data": rows}
        if self.api_key:
            body["key"] = self.api_key
        try:
            response = self.session.post(self.url, json=body, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("Sheet syncCommit unreachable: %s", e)
            raise SheetUnavailable(f"Spreadsheet endpoint unreachable: {e}")
        payload = self._unwrap(response, "syncCommit")
        logger.info("Pushed %d member row(s) to spreadsheet", len(rows))
        return payload


def read_workbook(content: bytes, names=None) -> dict:
    """워크시트 하나가 시트(소스 표) 하나"""
    try:
        wb = load_workbook(io.BytesIO(content), data_only=True, read_only=True)
    except zipfile.BadZipFile:
        raise InvalidCommand("Invalid .xlsx file. Save the workbook as .xlsx from Excel.")
    try:
        tables = {}
        for ws in wb.worksheets:
            if names is not None and ws.title not in names:
                continue
            rows = [list(row) for row in ws.iter_rows(values_only=True)]
            # 완전히 빈 행 제거
            tables[ws.title] = [r for r in rows if any(c is not None and str(c).strip() for c in r)]
    finally:
        wb.close()
    if names is not None:
        return {name: tables[name] for name in names if name in tables}
    return tables


def read_csv(content: bytes, source_name: str) -> dict:
    try:
        decoded = content.decode("utf-8-sig")
    except UnicodeDecodeError:
        try:
            decoded = content.decode("cp949")
        except UnicodeDecodeError:
            raise InvalidCommand("CSV encoding error: expected UTF-8 or CP949.")
    rows = [row for row in csv.reader(decoded.splitlines()) if any(c.strip() for c in row)]
    return {source_name: rows}
