import os
import logging
from typing import Optional

from .deep_grade import DeepGrader
from .job_queue import JobQueue, create_job_queue
from .key_moments import KeyMomentExtractor
from .line_rating import LineRater
from .llm_client import LLMClient
from .orchestrator import GradingOrchestrator
from .phrase_cache import PhraseCache, create_phrase_cache
from .session_store import SessionStore, create_session_store
from .worker_pool import WorkerPool

logger = logging.getLogger(__name__)


class GradingPipeline:
    """
    Explicitly constructed grading components with a start/shutdown lifecycle

    Anything not passed in is built from the environment. The LLM-backed
    stages need OPENAI_API_KEY unless their clients are supplied.
    """

    def __init__(self, store: Optional[SessionStore] = None, queue: Optional[JobQueue] = None,
                 cache: Optional[PhraseCache] = None, moments_llm=None, line_llm=None, deep_llm=None,
                 enable_deep_grade: bool = True, enrich_moments: bool = True, **pool_options):
        self.store = store or create_session_store()
        self.queue = queue or create_job_queue()
        self.cache = cache or create_phrase_cache()

        moments_llm = moments_llm or (LLMClient(model=os.getenv("KEY_MOMENTS_MODEL", "gpt-4o")) if enrich_moments else None)
        line_llm = line_llm or LLMClient(model=os.getenv("LINE_RATING_MODEL", "gpt-4o-mini"))

        self.extractor = KeyMomentExtractor(llm=moments_llm, enrich=enrich_moments)
        self.rater = LineRater(line_llm, self.cache)
        self.deep_grader = DeepGrader(llm=deep_llm) if enable_deep_grade else None
        self.orchestrator = GradingOrchestrator(
            store=self.store,
            queue=self.queue,
            extractor=self.extractor,
            deep_grader=self.deep_grader,
        )
        self.pool = WorkerPool(
            self.queue, self.rater, self.store,
            on_batch_complete=self.orchestrator.on_batch_complete,
            **pool_options
        )

    def start(self) -> None:
        self.pool.start()

    async def shutdown(self, drain: bool = True, timeout: Optional[float] = None) -> None:
        await self.pool.shutdown(drain=drain, timeout=timeout)
        await self.cache.close()
        await self.queue.close()
        await self.store.close()
        logger.info("Grading pipeline shut down")
