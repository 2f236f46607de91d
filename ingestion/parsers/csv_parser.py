"""
CSV parsing for uploaded feedlot files
"""

import asyncio
import io
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from core.exceptions import ParseError
from ingestion.loaders.facts import FACT_DEFINITIONS
from models.base import FactType
import logging

logger = logging.getLogger(__name__)

ENCODINGS = ("utf-8-sig", "latin-1")
CANDIDATE_SEPARATORS = (";", ",", "\t", "|")

# Header spellings seen in exported spreadsheets -> record field
HEADER_ALIASES = {
    "data": "data_ref",
    "date": "data_ref",
    "curral": "curral_codigo",
    "codigo_curral": "curral_codigo",
    "pen": "curral_codigo",
    "dieta": "dieta_nome",
    "diet": "dieta_nome",
    "vagao": "equipamento",
    "equipment": "equipamento",
    "planned": "kg_planejado",
    "previsto_kg": "kg_planejado",
    "real": "kg_real",
    "realizado_kg": "kg_real",
    "deviation": "desvio_kg",
    "deviation_pct": "desvio_pct",
    "hora": "hora_trato",
    "horario": "hora_trato",
    "operador": "trateiro",
    "kg": "quantidade_kg",
    "cabecas": "quantidade_cabecas",
    "obs": "observacoes",
}


def normalize_header(name: Any) -> str:
    """'Curral Codigo' / 'curralCodigo' / ' CURRAL-CODIGO ' -> 'curral_codigo'"""
    text = str(name).strip()
    text = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", text)
    text = re.sub(r"[^0-9a-zA-Z]+", "_", text).strip("_").lower()
    return HEADER_ALIASES.get(text, text)


def detect_separator(sample: str) -> str:
    """Pick the candidate that splits the header line into the most columns."""
    header = sample.splitlines()[0] if sample else ""
    counts = {sep: header.count(sep) for sep in CANDIDATE_SEPARATORS}
    best = max(counts, key=counts.get)
    return best if counts[best] else ","


def infer_fact_type(columns: List[str]) -> Optional[FactType]:
    """The fact type whose required columns are all present, if exactly one matches."""
    present = set(columns)
    matches = [
        definition.fact_type
        for definition in FACT_DEFINITIONS.values()
        if set(definition.required_columns) <= present
    ]
    # Trato files carry quantidade_kg; a desvio file never does
    if len(matches) > 1 and "quantidade_kg" in present:
        return FactType.TRATO_CURRAL
    if len(matches) > 1:
        return FactType.DESVIO_CARREGAMENTO
    return matches[0] if matches else None


class RecordParser(ABC):
    """Turns uploaded bytes into raw record dictionaries"""

    @abstractmethod
    def parse(self, content: bytes, filename: str = "upload") -> List[Dict[str, Any]]:
        pass

    async def parse_file(self, path: str) -> List[Dict[str, Any]]:
        file_path = Path(path)
        if not file_path.exists():
            raise ParseError(f"File not found: {file_path}", context={"filename": str(file_path)})
        content = await asyncio.to_thread(file_path.read_bytes)
        return await asyncio.to_thread(self.parse, content, file_path.name)


class CSVRecordParser(RecordParser):
    """
    Parse CSV exports with pandas.

    Supports:
    - ; , tab and | separators (detected from the header)
    - UTF-8 (with or without BOM) and Latin-1 files
    - Header normalization to record field names
    """

    def _decode(self, content: bytes, filename: str) -> str:
        for encoding in ENCODINGS:
            try:
                return content.decode(encoding)
            except UnicodeDecodeError:
                continue
        raise ParseError(f"Could not decode {filename}", context={"filename": filename})

    def parse(self, content: bytes, filename: str = "upload") -> List[Dict[str, Any]]:
        text = self._decode(content, filename)
        if not text.strip():
            raise ParseError(f"{filename} is empty", context={"filename": filename})

        separator = detect_separator(text)
        try:
            df = pd.read_csv(
                io.StringIO(text),
                sep=separator,
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=True,
            )
        except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            raise ParseError(
                f"Could not parse {filename}: {e}",
                context={"filename": filename, "separator": separator},
                original_exception=e
            )

        df.columns = [normalize_header(c) for c in df.columns]
        if df.columns.duplicated().any():
            duplicated = sorted(set(df.columns[df.columns.duplicated()]))
            raise ParseError(
                f"Duplicate columns in {filename}: {', '.join(duplicated)}",
                context={"filename": filename, "columns": duplicated}
            )

        if df.empty:
            logger.warning(f"{filename} has a header but no records")
            return []

        # Blank cells become None so optional fields stay empty
        df = df.apply(lambda column: column.str.strip())
        df = df.replace({"": None})
        df = df.dropna(how="all")

        records = df.to_dict(orient="records")
        logger.info(f"Parsed {len(records)} records from {filename} (separator {separator!r})")
        return records
