"""Wiring of the pipeline services, shared by the API, the worker and the CLI."""

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from knowledge_pipeline.analysis import ConversationAnalyzer, LLMRoleClassifier
from knowledge_pipeline.config import settings
from knowledge_pipeline.db.database import async_session_maker
from knowledge_pipeline.documents import DocumentAssembler, DocumentMetadataGenerator
from knowledge_pipeline.faqs import ChromaSimilarityIndex, FAQReviewService, FAQSynthesizer, SimilarityIndex
from knowledge_pipeline.ingestion import ChannelPuller, EventIngestionGuard, MessageChangeNotifier
from knowledge_pipeline.jobs import AutomationRuleService, JobHandlers, JobOrchestrator, JobStore
from knowledge_pipeline.llm import BaseLLM, LLMProviderNotConfiguredError, get_llm
from knowledge_pipeline.pii import RegexPIIRedactor
from knowledge_pipeline.vectorstore.client import ChromaClient
from knowledge_pipeline.vectorstore.embeddings import get_embeddings

logger = logging.getLogger(__name__)


@dataclass
class PipelineServices:
    session_maker: async_sessionmaker[AsyncSession]
    notifier: MessageChangeNotifier
    guard: EventIngestionGuard
    puller: ChannelPuller
    assembler: DocumentAssembler
    synthesizer: FAQSynthesizer
    review: FAQReviewService
    store: JobStore
    rules: AutomationRuleService
    orchestrator: JobOrchestrator
    llm: BaseLLM | None = None
    similarity_index: SimilarityIndex | None = None


async def build_services(
    session_maker: async_sessionmaker[AsyncSession] | None = None,
    llm: BaseLLM | None = None,
    similarity_index: SimilarityIndex | None = None,
    discover: bool = True,
) -> PipelineServices:
    """Build the service graph.

    With `discover`, a missing LLM is looked up through the provider registry
    and a missing similarity index is created against ChromaDB. Without an LLM
    the analyzer runs on heuristics only and FAQs keep the redacted chat text.
    """
    session_maker = session_maker or async_session_maker

    if llm is None and discover:
        try:
            llm = await get_llm()
        except LLMProviderNotConfiguredError as e:
            logger.warning(f"Running without an LLM: {e}")
    if similarity_index is None and discover:
        similarity_index = ChromaSimilarityIndex(ChromaClient(), get_embeddings())

    redactor = RegexPIIRedactor()
    notifier = MessageChangeNotifier()
    guard = EventIngestionGuard(session_maker, notifier)
    puller = ChannelPuller(guard)
    assembler = DocumentAssembler(
        session_maker,
        analyzer=ConversationAnalyzer(classifier=LLMRoleClassifier(llm) if llm else None),
        metadata_generator=DocumentMetadataGenerator(
            llm=llm, redactor=redactor, max_title_length=settings.MAX_TITLE_LENGTH
        ),
    )
    synthesizer = FAQSynthesizer(
        session_maker, llm=llm, similarity_index=similarity_index, redactor=redactor
    )
    review = FAQReviewService(session_maker, similarity_index)
    store = JobStore(session_maker)
    rules = AutomationRuleService(session_maker, store)
    handlers = JobHandlers(assembler, synthesizer, guard, store, puller=puller)
    orchestrator = JobOrchestrator(handlers.as_map(), session_maker, rules=rules, store=store)

    notifier.subscribe(rules.on_message_change)

    return PipelineServices(
        session_maker=session_maker,
        notifier=notifier,
        guard=guard,
        puller=puller,
        assembler=assembler,
        synthesizer=synthesizer,
        review=review,
        store=store,
        rules=rules,
        orchestrator=orchestrator,
        llm=llm,
        similarity_index=similarity_index,
    )
