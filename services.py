"""
services.py — External collaborators consumed by the wizard.

Each collaborator is declared as a Protocol and ships with an adapter:
  - InMemoryAssetStore
  - InMemoryRecordStore
  - StaticBalanceService
  - InMemoryDraftStore / JsonDraftStore
  - OpenAIPhotoAnalyzer / OpenAIProtocolGenerator
  - RecordingNavigator
"""

import json
import uuid
import base64
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from openai import AsyncOpenAI

from errors import DUPLICATE_CODE, REFERENCE_CODE, NoDataError, StoreError
from middleware import FilesystemMiddleware, PIIMiddleware
from state import Draft

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────
# Interfaces
# ─────────────────────────────────────────────
class AssetStore(Protocol):
    async def upload(self, owner_id: str, blob: bytes) -> str: ...
    async def download(self, asset_ref: str) -> bytes: ...


class PhotoAnalyzer(Protocol):
    async def analyze(self, image: bytes) -> Optional[dict]: ...


class ProtocolGenerator(Protocol):
    async def generate_resin_protocol(self, params: dict) -> None: ...
    async def generate_cementation_protocol(self, params: dict) -> None: ...


class RecordStore(Protocol):
    async def create_patient(self, owner_id: str, name: str, birth_date: Optional[str]) -> dict: ...
    async def find_patient_by_name(self, owner_id: str, name: str) -> Optional[dict]: ...
    async def update_patient_birth_date(self, patient_id: str, birth_date: str) -> None: ...
    async def create_evaluation(self, payload: dict) -> dict: ...
    async def update_evaluation_status(self, evaluation_id: str, status: str) -> None: ...
    async def update_evaluation_protocol(self, evaluation_id: str, protocol: dict) -> None: ...
    async def bulk_update_status(self, evaluation_ids: List[str], status: str) -> None: ...
    async def save_pending_items(self, rows: List[dict]) -> None: ...
    async def sync_group_protocols(self, session_id: str, evaluation_ids: List[str]) -> None: ...


class BalanceService(Protocol):
    def get_remaining_balance(self) -> int: ...
    def get_operation_cost(self, operation_key: str) -> int: ...
    def refresh(self) -> None: ...


class DraftStore(Protocol):
    def load(self, owner_id: str) -> Optional[Draft]: ...
    def save(self, owner_id: str, draft: Draft) -> None: ...
    def clear(self, owner_id: str) -> None: ...


class Navigation(Protocol):
    def navigate_to(self, path: str) -> None: ...


@dataclass
class Collaborators:
    assets:     AssetStore
    analyzer:   PhotoAnalyzer
    generators: ProtocolGenerator
    records:    RecordStore
    balance:    BalanceService
    drafts:     DraftStore
    navigation: Navigation


# ─────────────────────────────────────────────
# Asset store
# ─────────────────────────────────────────────
class InMemoryAssetStore:
    def __init__(self):
        self.blobs: Dict[str, bytes] = {}

    async def upload(self, owner_id: str, blob: bytes) -> str:
        ref = f"{owner_id}/intraoral_{uuid.uuid4().hex[:12]}.jpg"
        self.blobs[ref] = blob
        logger.info("[assets] Uploaded %d bytes → %s", len(blob), ref)
        return ref

    async def download(self, asset_ref: str) -> bytes:
        if asset_ref not in self.blobs:
            raise FileNotFoundError(f"[assets] Unknown asset: {asset_ref}")
        return self.blobs[asset_ref]


# ─────────────────────────────────────────────
# Record store
# ─────────────────────────────────────────────
class InMemoryRecordStore:
    """Dict-backed record store with the same constraint codes as the real one."""

    def __init__(self):
        self.patients:     Dict[str, dict] = {}
        self.evaluations:  Dict[str, dict] = {}
        self.pending_rows: List[dict]      = []
        self.synced:       List[tuple]     = []

    async def create_patient(self, owner_id: str, name: str, birth_date: Optional[str]) -> dict:
        for p in self.patients.values():
            if p["owner_id"] == owner_id and p["name"] == name:
                raise StoreError("duplicate key value violates unique constraint", code=DUPLICATE_CODE)

        patient = {"id": str(uuid.uuid4()), "owner_id": owner_id, "name": name, "birth_date": birth_date}
        self.patients[patient["id"]] = patient
        logger.info("[records] Patient created: %s", PIIMiddleware.mask_name(name))
        return patient

    async def find_patient_by_name(self, owner_id: str, name: str) -> Optional[dict]:
        for p in self.patients.values():
            if p["owner_id"] == owner_id and p["name"] == name:
                return p
        return None

    async def update_patient_birth_date(self, patient_id: str, birth_date: str) -> None:
        if patient_id not in self.patients:
            raise StoreError("patient not found", code=REFERENCE_CODE)
        self.patients[patient_id]["birth_date"] = birth_date

    async def create_evaluation(self, payload: dict) -> dict:
        evaluation = {**payload, "id": str(uuid.uuid4()), "protocol": None}
        self.evaluations[evaluation["id"]] = evaluation
        return evaluation

    async def update_evaluation_status(self, evaluation_id: str, status: str) -> None:
        self._evaluation(evaluation_id)["status"] = status

    async def update_evaluation_protocol(self, evaluation_id: str, protocol: dict) -> None:
        self._evaluation(evaluation_id)["protocol"] = protocol

    async def bulk_update_status(self, evaluation_ids: List[str], status: str) -> None:
        for evaluation_id in evaluation_ids:
            self._evaluation(evaluation_id)["status"] = status

    async def save_pending_items(self, rows: List[dict]) -> None:
        self.pending_rows.extend(rows)

    async def sync_group_protocols(self, session_id: str, evaluation_ids: List[str]) -> None:
        """Copies each treatment group's protocol onto the siblings that lack one."""
        self.synced.append((session_id, list(evaluation_ids)))

        by_treatment: Dict[str, dict] = {}
        for evaluation_id in evaluation_ids:
            e = self._evaluation(evaluation_id)
            if e.get("protocol") and e["treatment_type"] not in by_treatment:
                by_treatment[e["treatment_type"]] = e["protocol"]

        for evaluation_id in evaluation_ids:
            e = self._evaluation(evaluation_id)
            if not e.get("protocol") and e["treatment_type"] in by_treatment:
                e["protocol"] = {**by_treatment[e["treatment_type"]], "tooth": e["tooth"], "synced": True}

    def _evaluation(self, evaluation_id: str) -> dict:
        if evaluation_id not in self.evaluations:
            raise StoreError(f"evaluation {evaluation_id} not found", code=REFERENCE_CODE)
        return self.evaluations[evaluation_id]


# ─────────────────────────────────────────────
# Balance
# ─────────────────────────────────────────────
DEFAULT_OPERATION_COSTS = {
    "case_analysis":  1,
    "dsd_simulation": 2,
}


class StaticBalanceService:
    def __init__(self, remaining: int, costs: Optional[Dict[str, int]] = None):
        self.remaining = remaining
        self.costs     = dict(costs or DEFAULT_OPERATION_COSTS)
        self.refreshes = 0

    def get_remaining_balance(self) -> int:
        return self.remaining

    def get_operation_cost(self, operation_key: str) -> int:
        return self.costs.get(operation_key, 1)

    def refresh(self) -> None:
        self.refreshes += 1
        logger.debug("[balance] refresh → %d credits", self.remaining)


# ─────────────────────────────────────────────
# Drafts
# ─────────────────────────────────────────────
class InMemoryDraftStore:
    def __init__(self):
        self.drafts: Dict[str, Draft] = {}

    def load(self, owner_id: str) -> Optional[Draft]:
        return self.drafts.get(owner_id)

    def save(self, owner_id: str, draft: Draft) -> None:
        self.drafts[owner_id] = draft

    def clear(self, owner_id: str) -> None:
        self.drafts.pop(owner_id, None)


class JsonDraftStore:
    """One JSON file per owner under a drafts directory."""

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def _path(self, owner_id: str) -> str:
        return str(self.directory / f"draft_{owner_id}.json")

    def load(self, owner_id: str) -> Optional[Draft]:
        try:
            return FilesystemMiddleware.read_json(self._path(owner_id))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as e:
            logger.error("[drafts] Corrupt draft for owner %s: %s", owner_id, e)
            return None

    def save(self, owner_id: str, draft: Draft) -> None:
        FilesystemMiddleware.write_json(self._path(owner_id), draft)

    def clear(self, owner_id: str) -> None:
        FilesystemMiddleware.delete(self._path(owner_id))


# ─────────────────────────────────────────────
# OpenAI adapters
# ─────────────────────────────────────────────
ANALYZER_SYSTEM = """You are a dental photo analysis assistant.
Analyze the intraoral photo and respond ONLY with a JSON object:
{
  "detected_items": [
    {
      "item_id": "<FDI tooth number, e.g. 11>",
      "region": "<anterior|posterior>",
      "cavity_class": "<Class I..VI or null>",
      "restoration_size": "<small|medium|large|extensive or null>",
      "substrate": "<enamel|enamel_dentin|dentin or null>",
      "substrate_condition": "<healthy|sclerotic|stained|carious or null>",
      "enamel_condition": "<intact|fractured|hypoplastic or null>",
      "depth": "<shallow|medium|deep or null>",
      "priority": "<high|medium|low>",
      "notes": "<short note or null>",
      "treatment_indication": "<resina|porcelana|coroa|implante|endodontia|encaminhamento|gengivoplastia|recobrimento_radicular>",
      "indication_reason": "<why>"
    }
  ],
  "primary_item_id": "<item_id of the most relevant tooth or null>",
  "suggested_color": "<VITA shade, e.g. A2>",
  "treatment_indication": "<overall treatment type>",
  "observations": ["<observation>"]
}"""


class OpenAIPhotoAnalyzer:
    """Remote analyzer backed by a vision chat completion with a JSON response."""

    def __init__(self, client: AsyncOpenAI, model: str = "gpt-4o-mini"):
        self.client = client
        self.model  = model

    async def analyze(self, image: bytes) -> Optional[dict]:
        data_url = "data:image/jpeg;base64," + base64.b64encode(image).decode("ascii")

        resp = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": ANALYZER_SYSTEM},
                {"role": "user", "content": [
                    {"type": "text", "text": "Analyze this intraoral photo."},
                    {"type": "image_url", "image_url": {"url": data_url}},
                ]},
            ],
            temperature=0,
            max_tokens=1500,
            response_format={"type": "json_object"},
        )

        raw = (resp.choices[0].message.content or "").strip()
        if not raw:
            return None

        try:
            result = json.loads(raw)
        except json.JSONDecodeError as e:
            raise NoDataError(f"analyzer returned invalid JSON: {e}") from e

        logger.info("[analyzer] %d item(s) detected", len(result.get("detected_items") or []))
        return result


PROTOCOL_SYSTEM = """You are a restorative dentistry assistant.
Given the case parameters, respond ONLY with a JSON object:
{
  "summary": "<one paragraph>",
  "checklist": ["<step>", ...],
  "alerts": ["<alert>", ...],
  "recommendations": ["<recommendation>", ...]
}"""


class OpenAIProtocolGenerator:
    """
    Generates resin / cementation protocols with a chat completion and writes
    them onto the evaluation record.
    """

    def __init__(self, client: AsyncOpenAI, records: RecordStore, model: str = "gpt-4o-mini"):
        self.client  = client
        self.records = records
        self.model   = model

    async def _generate(self, kind: str, params: dict) -> None:
        resp = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": PROTOCOL_SYSTEM},
                {"role": "user", "content": f"Protocol type: {kind}\nParameters:\n{json.dumps(params, ensure_ascii=False)}"},
            ],
            temperature=0.2,
            max_tokens=1200,
            response_format={"type": "json_object"},
        )

        raw = (resp.choices[0].message.content or "").strip()
        if not raw:
            raise NoDataError(f"empty {kind} protocol")

        protocol = json.loads(raw)
        protocol["treatment_type"] = kind
        protocol["generated_at"]   = datetime.now(timezone.utc).isoformat()
        await self.records.update_evaluation_protocol(params["evaluation_id"], protocol)

    async def generate_resin_protocol(self, params: dict) -> None:
        await self._generate("resina", params)

    async def generate_cementation_protocol(self, params: dict) -> None:
        await self._generate("porcelana", params)


# ─────────────────────────────────────────────
# Navigation
# ─────────────────────────────────────────────
class RecordingNavigator:
    def __init__(self):
        self.paths: List[str] = []

    def navigate_to(self, path: str) -> None:
        logger.info("[navigation] → %s", path)
        self.paths.append(path)
