"""
Ingestion and report endpoints of the reconciliation backend.

Every call goes through the authenticated request function, so these
wrappers get token refresh and replay for free.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiohttp

from recon_client.api_client import ReconAPIClient

logger = logging.getLogger(__name__)

REPORTS_PATH = '/reports'

EXPORT_FORMATS = {
    'excel': 'xlsx',
    'csv': 'csv',
}

REPORT_KINDS = ('daily-summary', 'discrepancies', 'settlement', 'audit-trail')


def _slug(value: str) -> str:
    return re.sub(r'\s+', '-', value.strip().lower())


def export_filename(kind: str, fmt: str, params: Dict[str, Any]) -> str:
    """Name the exported file the way the web dashboard does."""
    extension = EXPORT_FORMATS[fmt]

    if kind == 'daily-summary':
        stem = f"daily-summary-{params.get('date') or 'today'}"
    elif kind == 'discrepancies':
        stem = f"discrepancy-report-{params['startDate']}-to-{params['endDate']}"
    elif kind == 'settlement':
        bank = _slug(params.get('bankName') or 'GTBank')
        stem = f"settlement-report-{bank}-{params['settlementDate']}"
    elif kind == 'audit-trail':
        stem = f"audit-trail-{params['startDate']}-to-{params['endDate']}"
    else:
        raise ValueError(f"Unknown report: {kind}")

    return f"{stem}.{extension}"


class ReconResources:
    """Typed wrappers around the ingestion and report APIs."""

    def __init__(self, api_client: ReconAPIClient):
        self.api_client = api_client

    def _csv_form(self, path: Path, bank: Optional[str]):
        content = path.read_bytes()

        def build() -> aiohttp.FormData:
            form = aiohttp.FormData()
            form.add_field('file', content, filename=path.name, content_type='text/csv')
            if bank is not None:
                form.add_field('bank', bank)
            return form

        return build

    async def upload_csv(self, path: str, bank: str = 'auto') -> Dict[str, Any]:
        """
        Upload a bank statement CSV.

        Args:
            path: Path to the CSV file
            bank: Bank format name, or "auto" to let the server detect it

        Returns:
            The ingestion result
        """
        csv_path = Path(path)
        logger.info(f"Uploading {csv_path.name} (bank: {bank})")
        response = await self.api_client.post('/ingest/csv', data=self._csv_form(csv_path, bank))
        return response.data

    async def upload_csv_auto_detect(self, path: str) -> Dict[str, Any]:
        """Upload a bank statement CSV and let the server detect the format."""
        csv_path = Path(path)
        logger.info(f"Uploading {csv_path.name} with format detection")
        response = await self.api_client.post('/ingest/csv/auto', data=self._csv_form(csv_path, None))
        return response.data

    async def get_supported_banks(self) -> List[str]:
        response = await self.api_client.get('/ingest/banks')
        return list(response.data or [])

    async def get_daily_summary(self, date: Optional[str] = None) -> Dict[str, Any]:
        params = {'date': date} if date else None
        response = await self.api_client.get(f'{REPORTS_PATH}/daily-summary', params=params)
        return response.data

    async def get_discrepancy_report(self, start_date: str, end_date: str) -> Dict[str, Any]:
        response = await self.api_client.get(
            f'{REPORTS_PATH}/discrepancies',
            params={'startDate': start_date, 'endDate': end_date}
        )
        return response.data

    async def get_settlement_report(self, settlement_date: str, bank_name: str = 'GTBank') -> Dict[str, Any]:
        response = await self.api_client.get(
            f'{REPORTS_PATH}/settlement',
            params={'settlementDate': settlement_date, 'bankName': bank_name}
        )
        return response.data

    async def get_audit_trail_report(self, start_date: str, end_date: str) -> Dict[str, Any]:
        response = await self.api_client.get(
            f'{REPORTS_PATH}/audit-trail',
            params={'startDate': start_date, 'endDate': end_date}
        )
        return response.data

    async def export_report(self, kind: str, fmt: str, destination_dir: str, **params) -> Path:
        """
        Download a report export and write it to ``destination_dir``.

        Args:
            kind: One of daily-summary, discrepancies, settlement, audit-trail
            fmt: "excel" or "csv"
            destination_dir: Directory to write the file into
            **params: Query parameters of the report (startDate, endDate, ...)

        Returns:
            Path of the written file
        """
        if kind not in REPORT_KINDS:
            raise ValueError(f"Unknown report: {kind}")
        if fmt not in EXPORT_FORMATS:
            raise ValueError(f"Unknown export format: {fmt}")

        if kind == 'settlement':
            params.setdefault('bankName', 'GTBank')
        query = {k: v for k, v in params.items() if v is not None}

        response = await self.api_client.get(
            f'{REPORTS_PATH}/{kind}/export/{fmt}',
            params=query or None,
            expect_binary=True
        )

        destination = Path(destination_dir)
        destination.mkdir(parents=True, exist_ok=True)
        target = destination / export_filename(kind, fmt, query)

        content = response.data
        if isinstance(content, str):
            content = content.encode()
        target.write_bytes(content or b'')

        logger.info(f"Exported {kind} report to {target} ({os.path.getsize(target)} bytes)")
        return target
