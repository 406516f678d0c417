from dataclasses import dataclass, field
from typing import List
from urllib.parse import urlparse

from ..errors import ValidationError
from ..models import JobStatus, JobType, utcnow
from ..services import DOWNLOADER, EMBEDDER, FILE_PROCESSOR
from .base import PROPAGATE, BaseJob, JobStep

DOWNLOADER_WARNING = "Downloader unavailable - recorded URLs without fetching content"
PROCESSOR_WARNING = "File processor unavailable - used plain text chunking"
EMBEDDER_WARNING = "Embedder unavailable - skipped embedding generation"

EMBED_BATCH_SIZE = 32

_DOWNLOAD_WEIGHT = 40


@dataclass
class ProcessingOptions:
    download_urls: List[str] = field(default_factory=list)
    chunk_size: int = 1000
    chunk_overlap: int = 200
    generate_embeddings: bool = True

    @classmethod
    def from_metadata(cls, metadata):
        metadata = metadata or {}
        options = metadata.get('options') or {}
        processing = options.get('processingOptions') or {}
        urls = options.get('downloadUrls') or metadata.get('downloadUrls') or options.get('download_urls') or []
        if isinstance(urls, str):
            urls = [urls]

        def pick(camel, snake, default):
            for source in (processing, options):
                if camel in source:
                    return source[camel]
                if snake in source:
                    return source[snake]
            return default

        try:
            chunk_size = int(pick('chunkSize', 'chunk_size', 1000))
            chunk_overlap = int(pick('chunkOverlap', 'chunk_overlap', 200))
        except (TypeError, ValueError):
            raise ValidationError("chunkSize and chunkOverlap must be integers", field='processingOptions') from None
        return cls(
            download_urls=list(urls),
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            generate_embeddings=bool(pick('generateEmbeddings', 'generate_embeddings', True)),
        )


def _is_http_url(value):
    if not isinstance(value, str):
        return False
    parsed = urlparse(value)
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


def split_text(text, chunk_size, chunk_overlap):
    """Fixed-size character chunks; consecutive chunks share chunk_overlap characters."""
    if not text:
        return []
    step = chunk_size - chunk_overlap
    return [text[start:start + chunk_size] for start in range(0, max(len(text) - chunk_overlap, 1), step)]


class ProcessingJob(BaseJob):
    """Downloads documents, extracts text chunks and generates embeddings."""

    job_type = JobType.PROCESSING

    options = None

    def define_steps(self):
        return [
            JobStep('download', 'Downloading files', 40, JobStatus.DOWNLOADING),
            JobStep('extract', 'Extracting text', 30, JobStatus.PROCESSING),
            JobStep('embed', 'Generating embeddings', 25, JobStatus.INDEXING),
            JobStep('finalize', 'Finalizing results', 5),
        ]

    @classmethod
    def validate_input(cls, query, metadata):
        options = ProcessingOptions.from_metadata(metadata)
        if not options.download_urls:
            raise ValidationError("No download URLs provided for processing job", field='downloadUrls')
        for url in options.download_urls:
            if not _is_http_url(url):
                raise ValidationError(f"Invalid URL provided for processing job: {url}", field='downloadUrls')
        if options.chunk_size <= 0:
            raise ValidationError("chunkSize must be positive", field='chunkSize')
        if not 0 <= options.chunk_overlap < options.chunk_size:
            raise ValidationError("chunkOverlap must be between 0 and chunkSize", field='chunkOverlap')
        return options

    def validate(self):
        self.options = self.validate_input(self.job_data.query, self.job_data.metadata)
        self.logger.info("Processing job validation passed", url_count=len(self.options.download_urls))

    def execute(self):
        self.steps.start_step('download')
        documents, errors = self._download_all()
        self.steps.complete_step('download')
        self.check_cancelled()

        self.steps.start_step('extract')
        chunks = self._extract_all(documents, errors)
        self.steps.complete_step('extract')
        self.check_cancelled()

        if self.options.generate_embeddings:
            self.steps.start_step('embed')
            embeddings = self._embed(chunks)
            self.steps.complete_step('embed')
        else:
            self.steps.skip_step('embed', 'Embeddings disabled')
            embeddings = []
        self.check_cancelled()

        self.steps.start_step('finalize')
        downloaded = [doc for doc in documents if doc.get('downloaded')]
        self.update_results({
            'downloads': [{'url': doc['url'], 'downloaded': bool(doc.get('downloaded'))} for doc in documents],
            'documentsDownloaded': len(downloaded),
            'documentsProcessed': sum(1 for doc in documents if doc.get('chunkCount')),
            'chunkCount': len(chunks),
            'embeddingCount': len(embeddings),
            'embeddingDimensions': len(embeddings[0]) if embeddings else None,
            'errors': errors,
            'completedAt': utcnow().isoformat(),
        })
        self.steps.complete_step('finalize')
        self.logger.info("Processing job finished", downloaded=len(downloaded), chunks=len(chunks),
                         embeddings=len(embeddings), errors=len(errors))

    def current_stage(self):
        if self.steps.current is not None:
            return self.steps.current.description
        return super().current_stage()

    def _download_all(self):
        urls = self.options.download_urls
        downloader = self.services.get_optional(DOWNLOADER)
        if downloader is None:
            self.add_warning(DOWNLOADER_WARNING)
            return [{'url': url, 'downloaded': False} for url in urls], []

        documents, errors = [], []
        for index, url in enumerate(urls, start=1):
            self.check_cancelled()
            try:
                document = dict(downloader.download(url) or {})
            except PROPAGATE:
                raise
            except Exception as exc:
                self.logger.warning("Download failed", url=url, error=str(exc))
                errors.append({'url': url, 'stage': 'download', 'error': str(exc)})
                documents.append({'url': url, 'downloaded': False})
                continue
            document.setdefault('url', url)
            document['downloaded'] = True
            documents.append(document)
            self.update_progress(_DOWNLOAD_WEIGHT * index / (len(urls) + 1), f"Downloaded {index}/{len(urls)}")
        return documents, errors

    def _extract_all(self, documents, errors):
        extractor = self.services.get_optional(FILE_PROCESSOR)
        if extractor is None and any(doc.get('downloaded') for doc in documents):
            self.add_warning(PROCESSOR_WARNING)

        chunks = []
        for document in documents:
            if not document.get('downloaded'):
                continue
            self.check_cancelled()
            try:
                if extractor is not None:
                    found = list(extractor.extract(document, self.options.chunk_size, self.options.chunk_overlap) or [])
                else:
                    found = split_text(document.get('text') or '', self.options.chunk_size, self.options.chunk_overlap)
            except PROPAGATE:
                raise
            except Exception as exc:
                self.logger.warning("Extraction failed", url=document['url'], error=str(exc))
                errors.append({'url': document['url'], 'stage': 'extract', 'error': str(exc)})
                continue
            document['chunkCount'] = len(found)
            chunks.extend(found)
        return chunks

    def _embed(self, chunks):
        embedder = self.services.get_optional(EMBEDDER)
        if embedder is None:
            self.add_warning(EMBEDDER_WARNING)
            return []
        if not chunks:
            self.logger.warning("No text chunks found for embedding generation")
            return []

        embeddings = []
        for start in range(0, len(chunks), EMBED_BATCH_SIZE):
            self.check_cancelled()
            batch = chunks[start:start + EMBED_BATCH_SIZE]
            try:
                embeddings.extend(embedder.embed(batch) or [])
            except PROPAGATE:
                raise
            except Exception as exc:
                self.logger.warning("Failed to generate embeddings for batch", batch_start=start, error=str(exc))
                self.add_warning(f"Embedding failed for {len(batch)} chunks")
        return embeddings
