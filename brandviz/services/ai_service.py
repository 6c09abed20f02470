"""
Servicio de análisis de marca con LLMs.
Consulta al modelo, parsea la respuesta con ChatGPT y calcula los puntajes.
"""

import asyncio
import json
import logging
import math
from typing import Any, Dict, List, Optional

from ..domain.enums import AnalysisStage
from ..infrastructure.llm_client import ILLMClient
from ..utils.helpers import round_half_up
from .prompt_service import PromptService
from .scoring_service import calculate_score, calculate_weighted_score

SYSTEM_MESSAGE = (
    "You are a helpful assistant tasked with answering business discovery questions using general market "
    "knowledge and inference.\n"
    "When possible, respond in the form of a ranked list of exactly 5 options.\n"
    "Rank them in order of relevance, prominence, or likelihood.\n"
    "If you are unfamiliar with any specific brands, provide comparable examples or general best practices.\n"
    "Avoid discussing your training data or knowledge cutoff unless specifically asked.\n"
    "Do not explain the ranking unless explicitly instructed.\n"
    "Avoid using hedge words like 'likely', 'probably', 'seems', 'appears' - be direct and confident in your "
    "assessments."
)

STAGE_INSTRUCTIONS = {
    AnalysisStage.TOFU.value: (
        "Focus on *brand awareness*, *visibility*, and *recognition*. Determine the brand's position when "
        "mentioned in lists or discussions. Position matters significantly for scoring."
    ),
    AnalysisStage.MOFU.value: (
        "Focus on *brand consideration* and *evaluation versus competitors*. Assess how the brand is perceived "
        "in comparison contexts and shortlist discussions."
    ),
    AnalysisStage.BOFU.value: (
        "Focus on *purchase intent* and *decision factors*. Determine if the brand is chosen, recommended, or "
        "rejected based on trust, pricing, or quality factors."
    ),
    AnalysisStage.EVFU.value: (
        "Focus on *post-purchase experience*, *loyalty*, and *advocacy potential*. Assess satisfaction levels, "
        "repeat usage indicators, and recommendation likelihood."
    ),
}
DEFAULT_INSTRUCTIONS = "Analyze general brand perception and positioning in the response."

CLASSIFICATION_GUIDELINES = {
    AnalysisStage.TOFU.value: """
### Classification Guidelines - TOFU (Brand Awareness)
- "mentioned" → brand is mentioned in the response (position determines score: 1st=100, 2nd=75, 3rd=50, 4th=25, 5th=10)
- "not_mentioned" → brand is not mentioned at all (score=0)""",
    AnalysisStage.MOFU.value: """
### Classification Guidelines - MOFU (Consideration)
- "mofu_positive" → strong brand consideration, compared favorably vs competitors (score=100)
- "mofu_conditional" → considered under some conditions or with caveats (score=75)
- "mofu_neutral" → neutral perception, mentioned without strong preference (score=50)
- "mofu_negative" → unfavorable perception or weak consideration (score=25)
- "mofu_absent" → not mentioned in consideration context (score=0)""",
    AnalysisStage.BOFU.value: """
### Classification Guidelines - BOFU (Purchase Intent)
- "bofu_yes" → clear purchase intent or strong preference indicated (score=100)
- "bofu_partial" → some indicators of interest or partial preference (score=75)
- "bofu_unclear" → uncertain or ambiguous purchase signals (score=50)
- "bofu_no" → unlikely to purchase or rejected (score=25)
- "bofu_absent" → not mentioned in purchase context (score=0)""",
    AnalysisStage.EVFU.value: """
### Classification Guidelines - EVFU (Post-Purchase/Advocacy)
- "evfu_recommend" → strong advocacy, positive experience, clear recommendation (score=100)
- "evfu_caveat" → recommends with caveats or mentions minor issues (score=75)
- "evfu_neutral" → mixed or indifferent post-purchase sentiment (score=50)
- "evfu_negative" → poor experience or dissatisfaction expressed (score=25)
- "evfu_absent" → not mentioned in post-purchase context (score=0)""",
}
DEFAULT_GUIDELINES = """
### Classification Guidelines - General
- Classify based on overall brand perception in the response"""

EMPTY_DISTRIBUTION = {"positive": 0, "neutral": 0, "negative": 0, "strongly_positive": 0}


def build_analysis_prompt(data: str, brand_name: str, stage: Optional[str]) -> str:
    """Prompt que pide a ChatGPT clasificar la respuesta de otro modelo en JSON estricto"""
    stage_label = stage or "Unknown"
    return f"""
You are an expert marketing analyst trained to evaluate brand performance across different stages of the marketing funnel.

Your task is to analyze the following AI-generated response and assess how the brand "{brand_name}" is mentioned, perceived, and positioned.

### Context
Analysis Stage: {stage_label}
{STAGE_INSTRUCTIONS.get(stage_label, DEFAULT_INSTRUCTIONS)}

### Response to Analyze
"{data}"

### Output Format
Return a **strict JSON** object:
{{
  "sentiment": {{
    "distribution": {{
      "positive": number,
      "neutral": number,
      "negative": number,
      "strongly_positive": number
    }},
    "overall": "positive" | "neutral" | "negative",
    "confidence": number  // 0–100
  }},
  "mentionPosition": number,  // Position of brand mention (1–5), or 0 if absent
  "stage_specific_classification": string,  // Use the appropriate label from guidelines below
  "analysis": string  // Detailed analysis including performance summary and recommendations
}}
{CLASSIFICATION_GUIDELINES.get(stage_label, DEFAULT_GUIDELINES)}

### Rules
- If the brand is **not mentioned**, set mentionPosition = 0 and use appropriate "absent/not_mentioned" classification
- Always include reasoning in **analysis** describing why the classification and sentiment were chosen
- Avoid adding any explanatory text outside the JSON
"""


def aggregate_sentiment(successful: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Sentimiento agregado de los prompts exitosos.
    La distribución se normaliza a porcentajes; confidence es el mayor acumulado
    dividido por la cantidad de respuestas.
    """
    result = {"overall": "neutral", "confidence": 0, "distribution": dict(EMPTY_DISTRIBUTION)}
    if not successful:
        return result

    totals = dict(EMPTY_DISTRIBUTION)
    for item in successful:
        distribution = (item.get("sentiment") or {}).get("distribution") or {}
        for key in totals:
            totals[key] += distribution.get(key, 0) or 0

    grand_total = sum(totals.values())
    if grand_total > 0:
        result["distribution"] = {key: round_half_up(value / grand_total * 100) for key, value in totals.items()}

    if totals["positive"] > totals["negative"]:
        result["overall"] = "positive"
    elif totals["negative"] > totals["positive"]:
        result["overall"] = "negative"

    result["confidence"] = round_half_up(max(totals.values()) / len(successful) * 100)
    return result


def parse_mention_position(value: Any) -> int:
    """Posición de mención del JSON del parser: acepta 2, 2.0 o "2"; cualquier otra cosa es 0"""
    if isinstance(value, bool):
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number):
        return 0
    return int(number)


def failed_analysis(error: Exception) -> Dict[str, Any]:
    """Resultado de un prompt cuyo análisis falló"""
    return {
        "score": 0,
        "position_weighted_score": 0,
        "response": f"Analysis failed: {error}",
        "responseTime": 0,
        "sentiment": {"overall": "negative", "confidence": 0, "distribution": dict(EMPTY_DISTRIBUTION)},
        "mentionPosition": 0,
        "stage_specific_classification": "not_mentioned",
        "analysis": "Analysis failed due to API error",
        "status": "error",
    }


class AIService:
    """Servicio de análisis de marca contra ChatGPT, Claude y Gemini"""

    def __init__(self, llm_client: ILLMClient, prompt_service: PromptService, prompt_delay_seconds: float = 0.5):
        self.llm_client = llm_client
        self.prompt_service = prompt_service
        self.prompt_delay_seconds = prompt_delay_seconds
        self.logger = logging.getLogger(__name__)

    async def parse_ai_response(self, data: str, brand_name: str, stage: Optional[str],
                                weights: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Clasifica la respuesta con ChatGPT y calcula puntaje y puntaje ponderado"""
        try:
            parsed_response = await self.llm_client.call_chatgpt(
                build_analysis_prompt(data, brand_name, stage), include_system=False
            )
            parsed = json.loads(parsed_response.response)
        except Exception as e:
            raise RuntimeError(f"ChatGPT API error: {e}") from e

        if not isinstance(parsed, dict):
            raise RuntimeError("ChatGPT API error: analysis is not a JSON object")

        classification = parsed.get("stage_specific_classification") or "not_mentioned"
        mention_position = parse_mention_position(parsed.get("mentionPosition"))
        sentiment_data = parsed.get("sentiment") or {}
        distribution = sentiment_data.get("distribution") or {}
        sentiment = {
            "distribution": {key: distribution.get(key) or 0 for key in EMPTY_DISTRIBUTION},
            "overall": sentiment_data.get("overall") or "neutral",
            "confidence": sentiment_data.get("confidence") or 0,
        }

        score = calculate_score(stage or "Unknown", classification, mention_position)
        if weights:
            weighted = calculate_weighted_score(
                score, stage or "Unknown", weights, classification, mention_position, sentiment
            )
        else:
            weighted = score

        return {
            "score": score,
            "position_weighted_score": weighted,
            "sentiment": sentiment,
            "mentionPosition": mention_position,
            "stage_specific_classification": classification,
            "analysis": f"AI Response: {data}\n\nAnalysis: {parsed.get('analysis')}",
        }

    async def analyze_brand(self, model: str, prompt: str, brand_name: str, stage: Optional[str] = None,
                            weights: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Analiza un prompt en un modelo.
        Nunca lanza: los errores se devuelven como resultado con status "error".
        """
        try:
            ai_response = await self.llm_client.query(model, prompt, SYSTEM_MESSAGE)
            parsed = await self.parse_ai_response(ai_response.response, brand_name, stage, weights)
            return {
                "score": parsed["score"],
                "position_weighted_score": parsed["position_weighted_score"],
                "response": ai_response.response,
                "responseTime": ai_response.response_time,
                "sentiment": parsed["sentiment"],
                "mentionPosition": parsed["mentionPosition"],
                "stage_specific_classification": parsed["stage_specific_classification"],
                "analysis": parsed["analysis"],
                "status": "success",
            }
        except Exception as e:
            self.logger.error(f"AI Analysis Error for {model}: {e}")
            return failed_analysis(e)

    async def analyze_with_multiple_prompts(self, brand: Dict[str, Any], model: str, stage: str) -> Dict[str, Any]:
        """Corre todos los prompts de la etapa en el modelo y agrega los resultados"""
        stage_prompts = self.prompt_service.get_prompts_by_stage(stage)
        if not stage_prompts:
            raise ValueError(f"No prompts found for stage: {stage}")

        prompt_results = []
        total_response_time = 0

        for prompt in stage_prompts:
            prompt_text = self.prompt_service.replace_prompt_placeholders(prompt.prompt_text, brand)
            try:
                result = await self.analyze_brand(model, prompt_text, brand.get("name", ""), stage, prompt.weights)
                prompt_results.append({
                    "promptId": prompt.prompt_id,
                    "promptText": prompt_text,
                    "score": result["score"],
                    "weightedScore": result["position_weighted_score"],
                    "mentionPosition": result["mentionPosition"],
                    "response": result["analysis"],
                    "responseTime": result["responseTime"],
                    "sentiment": result["sentiment"],
                    "status": result["status"],
                    "stage_specific_classification": result["stage_specific_classification"],
                })
                total_response_time += result["responseTime"]
                await asyncio.sleep(self.prompt_delay_seconds)
            except Exception as e:
                self.logger.error(f"Error analyzing prompt {prompt.prompt_id}: {e}")
                failed = failed_analysis(e)
                prompt_results.append({
                    "promptId": prompt.prompt_id,
                    "promptText": prompt_text,
                    "score": 0,
                    "weightedScore": 0,
                    "mentionPosition": 0,
                    "response": failed["response"],
                    "responseTime": 0,
                    "sentiment": failed["sentiment"],
                    "status": "error",
                    "stage_specific_classification": "not_mentioned",
                })

        successful = [r for r in prompt_results if r["status"] == "success"]
        overall_score = sum(r["score"] for r in successful) / len(successful) if successful else 0
        weighted_score = sum(r["weightedScore"] for r in successful) / len(successful) if successful else 0

        return {
            "overallScore": overall_score,
            "weightedScore": weighted_score,
            "promptResults": prompt_results,
            "aggregatedSentiment": aggregate_sentiment(successful),
            "totalResponseTime": total_response_time,
            "successRate": len(successful) / len(stage_prompts) * 100,
        }
