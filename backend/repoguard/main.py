"""RepoGuard composition root.

Wires the indexing and retrieval pipeline from an ``AppConfig``:

    - git_workspace: repository validation, clones, GitLab API client
    - embeddings:    provider (Ollama / Bedrock) behind the retrying service
    - rag:           FAISS index store and chunker
    - ingestion:     full ingestion, delta sync, readiness gate, job runner
    - context:       review-context assembly
    - audit:         DuckDB job ledger

Usage::

    pipeline = build_pipeline(load_config(Path("repoguard.settings.yaml")))
    job = pipeline.ingestion.submit(RepositoryRef(url=..., access_token=...))
    await pipeline.readiness.ensure_ready(url)
    context = await pipeline.context.assemble(diffs, url)
    await pipeline.shutdown()
"""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from repoguard.audit.service import JobAuditService
from repoguard.config import AppConfig, get_config
from repoguard.context.assembler import ContextAssembler
from repoguard.embeddings.bedrock import BedrockEmbeddingProvider
from repoguard.embeddings.ollama import OllamaEmbeddingProvider
from repoguard.embeddings.provider import EmbeddingProvider
from repoguard.embeddings.service import EmbeddingService
from repoguard.git_workspace.gitlab import GitLabClient
from repoguard.git_workspace.schemas import RepositoryRef
from repoguard.git_workspace.service import GitWorkspaceService
from repoguard.ingestion.delta import DeltaSyncEngine
from repoguard.ingestion.jobs import JobRunner
from repoguard.ingestion.orchestrator import IngestionOrchestrator
from repoguard.ingestion.readiness import ReadinessGate
from repoguard.rag.vector_store import IndexStore

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# botocore.auth logs the full SigV4 canonical request (including the
# security token); the HTTP stacks log every connection.
_NOISY_LOGGERS = (
    "botocore",
    "boto3",
    "urllib3",
    "urllib3.connectionpool",
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
)


def configure_logging(config: AppConfig) -> None:
    """Install the root handler and apply ``logging.level`` from config."""
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    for _noisy in _NOISY_LOGGERS:
        logging.getLogger(_noisy).setLevel(logging.WARNING)

    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())
    else:
        logger.warning("Unknown logging.level %r, keeping INFO", config.logging.level)


def create_provider(config: AppConfig) -> EmbeddingProvider:
    emb_cfg = config.embedding
    if emb_cfg.provider == "bedrock":
        aws = config.secrets.aws
        return BedrockEmbeddingProvider(
            model_id=emb_cfg.model,
            dim=emb_cfg.dim,
            aws_access_key_id=aws.access_key_id,
            aws_secret_access_key=aws.secret_access_key,
            aws_session_token=aws.session_token,
            region_name=aws.region,
        )
    return OllamaEmbeddingProvider(
        model_id=emb_cfg.model,
        dim=emb_cfg.dim,
        base_url=emb_cfg.base_url,
        timeout=emb_cfg.request_timeout,
    )


@dataclass
class Pipeline:
    """Every long-lived component, built once per process."""

    config: AppConfig
    store: IndexStore
    embedder: EmbeddingService
    workspace: GitWorkspaceService
    runner: JobRunner
    ingestion: IngestionOrchestrator
    delta: DeltaSyncEngine
    readiness: ReadinessGate
    context: ContextAssembler
    ledger: Optional[JobAuditService] = None

    async def shutdown(self) -> None:
        await self.runner.shutdown()
        if self.ledger is not None:
            self.ledger.close()
        logger.info("Pipeline shut down.")


def build_pipeline(
    config: Optional[AppConfig] = None,
    provider: Optional[EmbeddingProvider] = None,
) -> Pipeline:
    """Build the pipeline from *config* (defaults to the process-wide config)."""
    config = config or get_config()

    store = IndexStore(
        dim=config.embedding.dim,
        data_dir=Path(config.index.data_dir) if config.index.data_dir else None,
    )
    embedder = EmbeddingService(
        provider or create_provider(config),
        max_attempts=config.embedding.max_attempts,
        backoff_base=config.embedding.backoff_base_seconds,
        warmup_text=config.embedding.warmup_text,
    )
    workspace = GitWorkspaceService(
        temp_root=Path(config.ingestion.temp_root) if config.ingestion.temp_root else None,
    )
    ledger = JobAuditService(config.logging.audit_path) if config.logging.audit_enabled else None
    runner = JobRunner(
        max_concurrent_jobs=config.jobs.max_concurrent_jobs,
        ledger=ledger,
        max_finished_jobs=config.jobs.max_finished_jobs,
    )

    def gitlab_factory(repo: RepositoryRef) -> GitLabClient:
        return GitLabClient(
            base_url=config.gitlab.url,
            token=repo.access_token or config.secrets.gitlab.token,
            timeout=config.gitlab.request_timeout,
        )

    ingestion = IngestionOrchestrator(
        workspace=workspace,
        embedder=embedder,
        store=store,
        runner=runner,
        settings=config.ingestion,
        chunking=config.chunking,
        warm_up=config.embedding.warmup,
    )
    delta = DeltaSyncEngine(
        store=store,
        embedder=embedder,
        runner=runner,
        workspace=workspace,
        gitlab_factory=gitlab_factory,
        settings=config.delta,
        chunking=config.chunking,
        default_branch=config.gitlab.default_branch,
        failure_policy=config.ingestion.embedding_failure_policy,
    )
    readiness = ReadinessGate(
        store=store,
        orchestrator=ingestion,
        settings=config.readiness,
        access_token=config.secrets.gitlab.token,
        username=config.secrets.gitlab.username,
    )
    context = ContextAssembler(
        store=store,
        embedder=embedder,
        settings=config.context,
        binary_extensions=config.delta.binary_extensions,
    )
    logger.info(
        "Pipeline ready (provider=%s model=%s dim=%d, repositories indexed=%d)",
        config.embedding.provider, embedder.model_id, embedder.dim, len(store.repositories()),
    )
    return Pipeline(
        config=config,
        store=store,
        embedder=embedder,
        workspace=workspace,
        runner=runner,
        ingestion=ingestion,
        delta=delta,
        readiness=readiness,
        context=context,
        ledger=ledger,
    )
