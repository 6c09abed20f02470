"""
Servicio de prompts: carga el CSV de prompts y pesos por etapa del funnel
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

import pandas as pd

from ..domain.enums import AnalysisStage

# Columnas del CSV por etapa -> clave en la escala de pesos
STAGE_WEIGHT_COLUMNS = {
    AnalysisStage.TOFU.value: ("position_weights", {
        "first": "weight_first",
        "second": "weight_second",
        "third": "weight_third",
        "fourth": "weight_fourth",
        "fifth": "weight_fifth",
        "absent": "weight_absent",
    }),
    AnalysisStage.MOFU.value: ("mofu_scale", {
        "positive": "mofu_positive",
        "conditional": "mofu_conditional",
        "neutral": "mofu_neutral",
        "negative": "mofu_negative",
        "absent": "mofu_absent",
    }),
    AnalysisStage.BOFU.value: ("bofu_scale", {
        "yes": "bofu_yes",
        "partial": "bofu_partial",
        "unclear": "bofu_unclear",
        "no": "bofu_no",
        "absent": "bofu_absent",
    }),
    AnalysisStage.EVFU.value: ("evfu_scale", {
        "recommend": "evfu_recommend",
        "caveat": "evfu_caveat",
        "neutral": "evfu_neutral",
        "negative": "evfu_negative",
        "absent": "evfu_absent",
    }),
}


@dataclass
class ProcessedPrompt:
    """Prompt listo para enviar, con sus pesos de etapa"""
    prompt_id: str
    prompt_text: str
    funnel_stage: str
    base_weight: float = 1.0
    scale_name: Optional[str] = None
    scale: Dict[str, float] = field(default_factory=dict)

    @property
    def weights(self) -> Dict[str, Any]:
        weights: Dict[str, Any] = {"base_weight": self.base_weight}
        if self.scale_name:
            weights[self.scale_name] = dict(self.scale)
        return weights


def _to_float(value: Any) -> float:
    if value is None or pd.isna(value) or value == "":
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def build_stage_weights(row: Dict[str, Any], stage: str) -> Dict[str, Any]:
    """Arma base_weight y la escala propia de la etapa a partir de una fila del CSV"""
    base_weight = _to_float(row.get("base_weight")) or 1.0
    if stage not in STAGE_WEIGHT_COLUMNS:
        return {"base_weight": base_weight, "scale_name": None, "scale": {}}

    scale_name, columns = STAGE_WEIGHT_COLUMNS[stage]
    scale = {key: _to_float(row.get(column)) for key, column in columns.items()}
    return {"base_weight": base_weight, "scale_name": scale_name, "scale": scale}


def replace_prompt_placeholders(prompt_text: str, brand: Dict[str, Any]) -> str:
    """Reemplaza {placeholders} del template con los datos de la marca"""
    name = brand.get("name") or "Unknown Brand"
    audience = brand.get("target_audience") or []
    competitors = brand.get("competitors") or []
    features = brand.get("feature_list") or []

    placeholders = {
        "{brand_name}": name,
        "{name}": name,
        "{category}": brand.get("category") or "business services",
        "{region}": brand.get("region") or "your region",
        "{audience}": ", ".join(audience) or "businesses",
        "{use_case}": brand.get("use_case") or "general business needs",
        "{competitor}": competitors[0] if competitors else "industry leaders",
        "{feature_list}": " and ".join(features[:2]) or "core services and features",
    }

    text = prompt_text
    for key, value in placeholders.items():
        text = re.sub(re.escape(key), lambda _m, v=value: v, text)
    return text


class PromptService:
    """Servicio de lectura de prompts desde CSV. El CSV se carga una sola vez"""

    def __init__(self, csv_path: str):
        self.csv_path = csv_path
        self._prompts: List[ProcessedPrompt] = []
        self.logger = logging.getLogger(__name__)

    def load_prompts(self) -> List[ProcessedPrompt]:
        """Carga y cachea los prompts"""
        if self._prompts:
            return self._prompts

        try:
            df = pd.read_csv(self.csv_path, dtype={"prompt_id": str, "prompt_text": str, "funnel_stage": str})
        except (OSError, ValueError, pd.errors.ParserError) as e:
            self.logger.error(f"Error loading prompts from CSV {self.csv_path}: {e}")
            raise RuntimeError("Failed to load prompts") from e

        df = df.dropna(subset=["prompt_id", "prompt_text"])
        df = df[(df["prompt_id"].str.strip() != "") & (df["prompt_text"].str.strip() != "")]

        prompts = []
        for row in df.to_dict(orient="records"):
            stage = str(row.get("funnel_stage", "")).strip()
            weights = build_stage_weights(row, stage)
            prompts.append(ProcessedPrompt(
                prompt_id=str(row["prompt_id"]).strip(),
                prompt_text=str(row["prompt_text"]).strip(),
                funnel_stage=stage,
                base_weight=weights["base_weight"],
                scale_name=weights["scale_name"],
                scale=weights["scale"],
            ))

        self._prompts = prompts
        self.logger.info(f"Loaded {len(prompts)} prompts from {self.csv_path}")
        return self._prompts

    def get_prompts_by_stage(self, stage: str) -> List[ProcessedPrompt]:
        """Prompts de una etapa del funnel"""
        return [prompt for prompt in self.load_prompts() if prompt.funnel_stage == stage]

    def replace_prompt_placeholders(self, prompt_text: str, brand: Dict[str, Any]) -> str:
        return replace_prompt_placeholders(prompt_text, brand)
