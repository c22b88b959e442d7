"""
Client for the external Hebrew word-embedding service.

The service scores a guess against the target word and exposes a ranking
API (reference similarities by rank, admin word publishing). All calls are
async ``httpx`` requests; failures surface as ``CollaboratorError`` so the
caller never records a guess without a score.
"""
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from . import config
from .cache import cache_reference_scores, get_cached_reference_scores
from .errors import CollaboratorError, OutOfVocabularyError
from .logging_utils import get_logger
from .words import to_ranking_date

logger = get_logger("semantle.similarity")


@dataclass(frozen=True)
class SimilarityResult:
    similarity: float
    rank: Optional[int] = None


def _error_message(resp: httpx.Response) -> Optional[str]:
    try:
        body = resp.json()
    except ValueError:
        return None
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return None


class SimilarityGateway:
    def __init__(
        self,
        similarity_url: Optional[str] = None,
        ranking_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self.similarity_url = similarity_url or config.SIMILARITY_API_URL
        self.ranking_url = (ranking_url or config.RANKING_API_URL).rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout or config.SIMILARITY_TIMEOUT_SECONDS)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def similarity(self, target: str, guess: str) -> SimilarityResult:
        try:
            resp = await self._client.post(self.similarity_url, json={"guess": guess, "target": target})
        except httpx.HTTPError as exc:
            logger.warning("similarity_request_failed", extra={"word": guess, "error": str(exc)})
            raise CollaboratorError("Could not reach the similarity service, please try again") from exc

        err = _error_message(resp)
        if resp.status_code == 400 or (err and resp.status_code < 500):
            raise OutOfVocabularyError(err or f'The word "{guess}" is not in the vocabulary')
        if resp.status_code >= 400:
            logger.warning("similarity_bad_status", extra={"word": guess, "status": resp.status_code, "error": err})
            raise CollaboratorError("Similarity calculation failed, please try again")

        try:
            body = resp.json()
            similarity = float(body["similarity"])
        except (ValueError, KeyError, TypeError) as exc:
            raise CollaboratorError("Similarity service returned an invalid response") from exc
        rank = body.get("rank")
        return SimilarityResult(similarity=similarity, rank=int(rank) if rank is not None else None)

    async def reference_scores(self, date: str, ranks=None) -> Dict[str, float]:
        """Similarity of the words at fixed ranks for ``date``; failed ranks are skipped."""
        cached = get_cached_reference_scores(date)
        if cached is not None:
            return cached

        results: Dict[str, float] = {}
        formatted = to_ranking_date(date)
        for rank in ranks or config.REFERENCE_RANKS:
            try:
                resp = await self._client.get(f"{self.ranking_url}/closest", params={"date": formatted, "rank": rank})
            except httpx.HTTPError as exc:
                logger.warning("reference_rank_failed", extra={"word_date": date, "error": str(exc)})
                continue
            if resp.status_code != 200:
                logger.warning("reference_rank_failed", extra={"word_date": date, "status": resp.status_code})
                continue
            try:
                sim = resp.json().get("similarity")
            except ValueError:
                continue
            if sim is not None:
                results[f"rank{rank}"] = float(sim)

        if results:
            cache_reference_scores(date, results)
        return results

    async def publish_daily_word(self, date: str, word: str) -> dict:
        if not config.RANKING_ADMIN_PASSWORD:
            raise CollaboratorError("Ranking service admin password is not configured")
        try:
            resp = await self._client.post(
                f"{self.ranking_url}/admin/set-daily-word",
                params={"date": date, "word": word},
                auth=("admin", config.RANKING_ADMIN_PASSWORD),
            )
        except httpx.HTTPError as exc:
            raise CollaboratorError("Could not reach the ranking service") from exc
        if resp.status_code >= 300:
            raise CollaboratorError(f"Ranking service error: {resp.status_code} {resp.text}")
        try:
            return resp.json()
        except ValueError:
            return {}
