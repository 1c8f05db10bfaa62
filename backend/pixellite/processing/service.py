"""Processing service: owns unsaved records and applies processing results to them."""
import logging
import threading
from typing import Optional

from pixellite.config import (
    AI_GENERATED_QUALITY,
    AI_IMAGE_MODEL,
    AI_PROMPT,
    COMPRESSION_ENGINE,
    DEFAULT_INTENSITY,
    DEFAULT_QUALITY,
    DEFAULT_SETTINGS,
)
from pixellite.errors import RecordLockedError
from pixellite.processing.ai import AIClient
from pixellite.processing.compression import compress
from pixellite.processing.converter import convert_format
from pixellite.processing.decoder import decode_image
from pixellite.processing.enhancement import AIEnhancer, get_enhancement_strategy
from pixellite.processing.export import format_bytes
from pixellite.processing.models import (
    CompressionEngine,
    EnhanceMethod,
    OutputFormat,
    PixelBuffer,
    ProcessedArtifact,
    ProcessedImageRecord,
    ProcessingParams,
    ProcessMode,
    data_url,
    new_record_id,
)

logger = logging.getLogger("pixellite.service")

MB = 1024 * 1024
COMPRESS_MODE_DEFAULT = 0.8


def smart_quality(size: int) -> float:
    """Initial compression quality by input size: larger files start lower."""
    if size > 5 * MB:
        return 0.6
    if size > 2 * MB:
        return 0.7
    if size > 1 * MB:
        return 0.75
    return 0.85


def initial_value(mode: ProcessMode, size: int, settings: Optional[dict] = None) -> float:
    settings = settings or DEFAULT_SETTINGS
    if mode == ProcessMode.ENHANCE:
        return DEFAULT_INTENSITY
    if settings.get("smart_compression"):
        return smart_quality(size)
    return float(settings.get("default_quality", DEFAULT_QUALITY))


def run_pipeline(buffer: PixelBuffer, params: ProcessingParams, ai_client=None, prompt: str = AI_PROMPT, model: str = AI_IMAGE_MODEL) -> ProcessedArtifact:
    """Dispatch one processing call to the strategy selected by params."""
    if params.mode == ProcessMode.COMPRESS:
        return compress(buffer, params)
    strategy = get_enhancement_strategy(params.enhance_method, client=ai_client, prompt=prompt, model=model)
    return strategy.process(buffer, params)


class ProcessingService:
    """
    Holds records that are being edited and serializes results per record.

    Every processing call takes a generation token; a finished call only replaces the
    record's output if no later call for the same record was started in the meantime.
    """

    def __init__(self, ai_client: Optional[AIClient] = None):
        self._records: dict[str, ProcessedImageRecord] = {}
        self._generations: dict[str, int] = {}
        self._lock = threading.Lock()
        self.ai_client = ai_client if ai_client is not None else AIClient()
        logger.info("ProcessingService initialized (default engine=%s)", COMPRESSION_ENGINE)

    def get_record(self, record_id: str) -> Optional[ProcessedImageRecord]:
        return self._records.get(record_id)

    def register(self, record: ProcessedImageRecord) -> ProcessedImageRecord:
        self._records[record.id] = record
        return record

    def discard(self, record_id: str) -> None:
        with self._lock:
            self._records.pop(record_id, None)
            self._generations.pop(record_id, None)

    def begin_generation(self, record_id: str) -> int:
        with self._lock:
            generation = self._generations.get(record_id, 0) + 1
            self._generations[record_id] = generation
            return generation

    def is_current(self, record_id: str, generation: int) -> bool:
        return self._generations.get(record_id) == generation

    def _require_mutable(self, record_id: str) -> ProcessedImageRecord:
        record = self._records.get(record_id)
        if record is None:
            raise KeyError(record_id)
        if record.saved:
            raise RecordLockedError(f"Record {record_id} is saved to history")
        return record

    def _apply(self, record: ProcessedImageRecord, generation: int, artifact: ProcessedArtifact, params: ProcessingParams, quality_used: Optional[float] = None) -> bool:
        with self._lock:
            if not self.is_current(record.id, generation):
                logger.info("Dropping stale result for %s (generation %s)", record.id, generation)
                return False
            record.apply_artifact(artifact, params.value if quality_used is None else quality_used)
            record.mode = params.mode
            record.enhance_method = params.enhance_method if params.mode == ProcessMode.ENHANCE else None
            return True

    def create_record(
        self,
        data: bytes,
        filename: str,
        mime_type: str,
        mode: ProcessMode = ProcessMode.COMPRESS,
        settings: Optional[dict] = None,
        value: Optional[float] = None,
    ) -> ProcessedImageRecord:
        """Decode the upload, run the initial processing pass and keep the record as unsaved."""
        settings = settings or DEFAULT_SETTINGS
        mode = ProcessMode(mode)
        method = EnhanceMethod(settings.get("enhance_method", EnhanceMethod.ALGORITHM.value))
        buffer = decode_image(data, mime_type)
        record = ProcessedImageRecord(
            id=new_record_id(),
            original_name=filename,
            original_mime=mime_type or buffer.source_mime,
            original_bytes=data,
            processed_bytes=data,
            processed_mime=mime_type or buffer.source_mime,
            quality_used=0.0,
            mode=mode,
            enhance_method=method if mode == ProcessMode.ENHANCE else None,
            output_format=OutputFormat(settings.get("output_format", OutputFormat.ORIGINAL.value)),
        )
        if mode == ProcessMode.ENHANCE and method == EnhanceMethod.AI:
            # Output stays a copy of the original until generation is requested
            self.register(record)
            return record
        if value is None:
            value = initial_value(mode, len(data), settings)
        params = self.params_for(record, value, settings, mode=mode)
        artifact = run_pipeline(buffer, params)
        record.apply_artifact(artifact, value)
        self.register(record)
        logger.info(
            "Processed %s (%s): %s -> %s", filename, mode.value, format_bytes(record.original_size), format_bytes(record.processed_size)
        )
        return record

    @staticmethod
    def params_for(
        record: ProcessedImageRecord,
        value: float,
        settings: Optional[dict] = None,
        mode: Optional[ProcessMode] = None,
        output_format: Optional[OutputFormat] = None,
        enhance_method: Optional[EnhanceMethod] = None,
    ) -> ProcessingParams:
        settings = settings or DEFAULT_SETTINGS
        mode = ProcessMode(mode or record.mode)
        method = enhance_method or record.enhance_method or EnhanceMethod(settings.get("enhance_method", EnhanceMethod.ALGORITHM.value))
        return ProcessingParams(
            value=value,
            mode=mode,
            engine=CompressionEngine(settings.get("compression_engine", COMPRESSION_ENGINE)),
            enhance_method=method,
            output_format=OutputFormat(output_format or record.output_format),
        )

    def reprocess(
        self,
        record_id: str,
        value: float,
        settings: Optional[dict] = None,
        output_format: Optional[OutputFormat] = None,
        mode: Optional[ProcessMode] = None,
        enhance_method: Optional[EnhanceMethod] = None,
    ) -> tuple[ProcessedImageRecord, bool]:
        """
        Re-run the record at a new quality/intensity, optionally in another mode or container.
        The record only changes once the new output is ready. Returns (record, applied).
        """
        record = self._require_mutable(record_id)
        params = self.params_for(record, value, settings, mode=mode, output_format=output_format, enhance_method=enhance_method)
        if params.mode == ProcessMode.ENHANCE and params.enhance_method == EnhanceMethod.AI:
            raise ValueError("AI enhancement is triggered explicitly, not by intensity changes")
        generation = self.begin_generation(record_id)
        buffer = decode_image(record.original_bytes, record.original_mime)
        artifact = run_pipeline(buffer, params)
        return record, self._apply(record, generation, artifact, params)

    def switch_mode(self, record_id: str, mode: ProcessMode, settings: Optional[dict] = None) -> tuple[ProcessedImageRecord, bool]:
        """Toggle compress/enhance, resetting the parameter to the mode default."""
        settings = settings or DEFAULT_SETTINGS
        record = self._require_mutable(record_id)
        mode = ProcessMode(mode)
        method = EnhanceMethod(settings.get("enhance_method", EnhanceMethod.ALGORITHM.value))
        if mode == ProcessMode.ENHANCE and method == EnhanceMethod.AI:
            record.mode = mode
            record.enhance_method = EnhanceMethod.AI
            return record, False
        value = COMPRESS_MODE_DEFAULT if mode == ProcessMode.COMPRESS else DEFAULT_INTENSITY
        return self.reprocess(
            record_id, value, settings, mode=mode, enhance_method=method if mode == ProcessMode.ENHANCE else None
        )

    def enhance_with_ai(self, record_id: str, prompt: str = AI_PROMPT, model: str = AI_IMAGE_MODEL) -> tuple[ProcessedImageRecord, bool]:
        """Regenerate the image through the AI relay and keep the raw result for later format changes."""
        record = self._require_mutable(record_id)
        generation = self.begin_generation(record_id)
        params = ProcessingParams(
            value=AI_GENERATED_QUALITY,
            mode=ProcessMode.ENHANCE,
            enhance_method=EnhanceMethod.AI,
            output_format=record.output_format,
        )
        enhancer = AIEnhancer(self.ai_client, prompt=prompt, model=model)
        buffer = decode_image(record.original_bytes, record.original_mime)
        raw = enhancer.process(buffer, params)
        artifact = raw
        if record.output_format != OutputFormat.ORIGINAL:
            artifact = convert_format(raw.data, record.output_format, raw.mime_type)
        with self._lock:
            if not self.is_current(record_id, generation):
                logger.info("Dropping stale AI result for %s (generation %s)", record_id, generation)
                return record, False
            record.apply_artifact(artifact, AI_GENERATED_QUALITY)
            record.mode = ProcessMode.ENHANCE
            record.enhance_method = EnhanceMethod.AI
            record.ai_model_used = model
            record.ai_generated_text = enhancer.last_text
            record.ai_original_bytes = raw.data
            record.ai_original_mime = raw.mime_type
        return record, True

    def change_output_format(self, record_id: str, output_format: OutputFormat, settings: Optional[dict] = None) -> tuple[ProcessedImageRecord, bool]:
        """
        Switch the output container. AI results are converted from the stored AI output;
        everything else is reprocessed at the current quality/intensity.
        """
        record = self._require_mutable(record_id)
        output_format = OutputFormat(output_format)
        if record.is_ai_result and record.ai_original_bytes is not None:
            generation = self.begin_generation(record_id)
            artifact = convert_format(record.ai_original_bytes, output_format, record.ai_original_mime or "")
            params = ProcessingParams(value=AI_GENERATED_QUALITY, mode=ProcessMode.ENHANCE, enhance_method=EnhanceMethod.AI, output_format=output_format)
            return record, self._apply(record, generation, artifact, params)
        if record.mode == ProcessMode.ENHANCE and record.enhance_method == EnhanceMethod.AI:
            record.output_format = output_format
            return record, False
        return self.reprocess(record_id, record.quality_used, settings, output_format=output_format)

    def analyze(self, record_id: str, model: Optional[str] = None):
        """Attach an AI description and tags. Allowed on saved records too."""
        record = self._records.get(record_id)
        if record is None:
            raise KeyError(record_id)
        kwargs = {"model": model} if model else {}
        record.ai_analysis = self.ai_client.analyze_image(data_url(record.processed_bytes, record.processed_mime), **kwargs)
        return record

    def commit(self, record_id: str) -> ProcessedImageRecord:
        record = self._records.get(record_id)
        if record is None:
            raise KeyError(record_id)
        record.saved = True
        return record


# Singleton
_processing_service: Optional[ProcessingService] = None


def get_processing_service() -> ProcessingService:
    global _processing_service
    if _processing_service is None:
        _processing_service = ProcessingService()
    return _processing_service
