"""Session controller: the idle/recording/processing state machine."""

import asyncio
import uuid
import logging
from datetime import datetime
from typing import Callable, Optional

from pubsub import pub

from ..audio.audio_saver import AudioSaver
from ..audio.capture import DeviceHandle, MicrophoneSource
from ..audio.encoder import AudioEncoder, select_format
from ..config import ScribeConfig
from ..errors import AcquisitionError, ErrorKind, GenerationError, ScribeError
from ..models.audio import AudioStats, CaptureConstraints
from ..models.events import ConnectionState, ConnectionStatus, ControllerState
from ..models.session import ClinicalNote, PatientContext, Session, SessionStatus
from ..models.transcription import Transcript, TranscriptionEvent
from ..storage.recording_store import RecordingStore
from ..transcription.aggregator import TranscriptAggregator
from ..transcription.base import TranscriptionTransport
from ..transcription.client import StreamingTranscriptionClient
from ..transcription.deepgram import AiohttpTransport, StreamSettings, build_listen_url
from .note_gateway import NoteGenerationGateway, validate_transcription

logger = logging.getLogger(__name__)


class SessionController:
    """Owns one recording session at a time and everything it holds.

    Observers subscribe to pypubsub topics under ``topic_prefix``:

    - ``<prefix>_state`` (``state``: ControllerState)
    - ``<prefix>_connection`` (``status``: ConnectionStatus)
    - ``<prefix>_transcript`` (``transcript``: Transcript)
    - ``<prefix>_note`` (``note``: Optional[ClinicalNote])
    - ``<prefix>_error`` (``error``: Optional[ScribeError])

    All methods must be called from the event loop thread; listeners are
    invoked on that thread as well.
    """

    def __init__(self,
                 config: ScribeConfig,
                 microphone: Optional[MicrophoneSource] = None,
                 gateway: Optional[NoteGenerationGateway] = None,
                 store: Optional[RecordingStore] = None,
                 transport_factory: Optional[Callable[[], TranscriptionTransport]] = None,
                 sleep: Callable = asyncio.sleep,
                 topic_prefix: Optional[str] = None):
        """Initialize the controller.

        Args:
            config: Application configuration
            microphone: Microphone source (defaults to PyAudio)
            gateway: Note generation gateway (defaults to one built from config)
            store: Recording store for captured audio; None disables saving
            transport_factory: Builds transcription transports (defaults to aiohttp)
            sleep: Backoff sleep handed to the streaming client
            topic_prefix: pypubsub topic root for observer messages
        """
        self.config = config
        self.microphone = microphone or MicrophoneSource()
        self.gateway = gateway or NoteGenerationGateway.from_config(config)
        self.store = store
        self.transport_factory = transport_factory or self._default_transport
        self.sleep = sleep
        self.topic_prefix = topic_prefix or f"scribe_{uuid.uuid4().hex[:8]}"

        self.aggregator = TranscriptAggregator(config.get('transcription.speaker_roles', {}))
        self.min_transcript_chars = config.get('notes.min_transcript_chars', 50)

        self._state = ControllerState.IDLE
        self.session: Optional[Session] = None
        self.patient: Optional[PatientContext] = None
        self.note: Optional[ClinicalNote] = None
        self.error: Optional[ScribeError] = None
        self.connection_status = ConnectionStatus()

        # Resources owned while recording
        self._handle: Optional[DeviceHandle] = None
        self._encoder: Optional[AudioEncoder] = None
        self._client: Optional[StreamingTranscriptionClient] = None
        self._saver: Optional[AudioSaver] = None
        self._forward_task: Optional[asyncio.Task] = None
        self._abort_task: Optional[asyncio.Task] = None
        self._note_task: Optional[asyncio.Task] = None
        self._teardown_task: Optional[asyncio.Task] = None
        self._finishing = False

        logger.info(f"SessionController ready (topics under '{self.topic_prefix}')")

    def _default_transport(self) -> TranscriptionTransport:
        return AiohttpTransport(connect_timeout=self.config.get('transcription.connect_timeout_seconds', 10.0))

    # Observer topics

    def topic(self, name: str) -> str:
        return f"{self.topic_prefix}_{name}"

    def _set_state(self, state: ControllerState) -> None:
        if state is self._state:
            return
        logger.info(f"Controller state: {self._state.value} -> {state.value}")
        self._state = state
        pub.sendMessage(self.topic("state"), state=state)

    def _surface(self, error: Optional[ScribeError]) -> None:
        self.error = error
        if error is not None:
            logger.error(f"❌ {error.kind.value}: {error}")
        pub.sendMessage(self.topic("error"), error=error)

    def _publish_transcript(self) -> None:
        transcript = self.aggregator.transcript
        if self.session is not None:
            self.session.transcript = transcript
        pub.sendMessage(self.topic("transcript"), transcript=transcript)

    def _publish_note(self) -> None:
        pub.sendMessage(self.topic("note"), note=self.note)

    # Read access

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def transcript(self) -> Transcript:
        return self.aggregator.transcript

    @property
    def final_text(self) -> str:
        return self.aggregator.final_text

    @property
    def partial_text(self) -> str:
        return self.aggregator.partial_text

    def get_audio_stats(self) -> Optional[AudioStats]:
        """Capture statistics of the active recording, if any."""
        handle = self._handle
        return handle.get_recording_stats() if handle is not None else None

    # Entry points

    async def toggle(self, patient_id: str, patient: Optional[PatientContext] = None) -> ControllerState:
        """Start recording when idle, stop when recording.

        Returns:
            The controller state after the call
        """
        if self._finishing:
            logger.warning("Session is shutting down, ignoring toggle")
        elif self._state is ControllerState.IDLE:
            self._start(patient_id, patient)
        elif self._state is ControllerState.RECORDING:
            await self._stop()
        else:
            logger.warning("Note generation in progress, ignoring toggle")
        return self._state

    async def reset(self) -> None:
        """Release everything and clear session, transcript, note and error."""
        logger.info("Resetting session")
        for task in (self._note_task, self._abort_task):
            if task is not None and not task.done():
                task.cancel()

        # A stop may still be flushing resources it already detached.
        teardown, self._teardown_task = self._teardown_task, None
        if teardown is not None and not teardown.done():
            teardown.cancel()
            await asyncio.gather(teardown, return_exceptions=True)
        await self._teardown(persist=False)

        self.aggregator.reset()
        self.session = None
        self.patient = None
        self.note = None
        self.connection_status = ConnectionStatus()
        self._finishing = False
        self._publish_transcript()
        self._publish_note()
        self._surface(None)
        self._set_state(ControllerState.IDLE)

    async def regenerate_note(self) -> Optional[ClinicalNote]:
        """Retry note generation for the retained transcript."""
        text = self.aggregator.final_text.strip()
        if self._state is not ControllerState.IDLE or not text:
            logger.warning("Nothing to regenerate: no transcript, or a session is active")
            return None

        self._surface(None)
        self._set_state(ControllerState.PROCESSING)
        try:
            return await self._run_generation(text)
        finally:
            self._set_state(ControllerState.IDLE)

    # idle -> recording

    def _start(self, patient_id: str, patient: Optional[PatientContext]) -> None:
        self.aggregator.reset()
        self.note = None
        self.connection_status = ConnectionStatus()
        self._surface(None)
        self._publish_note()

        self.session = Session(id=str(uuid.uuid4()), patient_id=patient_id, start_time=datetime.now())
        self.patient = patient
        self._publish_transcript()

        constraints = CaptureConstraints(
            sample_rate=self.config.get('audio.sample_rate', 16000),
            channels=self.config.get('audio.channels', 1),
            echo_cancellation=self.config.get('audio.echo_cancellation', True),
            noise_suppression=self.config.get('audio.noise_suppression', True),
            auto_gain_control=self.config.get('audio.auto_gain_control', True),
            frames_per_buffer=self.config.get('audio.frames_per_buffer', 1024),
            device_index=self.config.get('audio.device_index'),
        )

        try:
            handle = self.microphone.acquire(constraints)
        except AcquisitionError as e:
            self.session = None
            self._surface(e)
            return

        try:
            api_key = self.config.transcription_api_key
            if not api_key:
                raise ScribeError(ErrorKind.NOT_CONFIGURED, "Transcription API key is not configured")
            audio_format = select_format(
                self.config.get('audio.format_preference', ["linear16", "mulaw"]),
                self.microphone.provider.supported_encodings(),
            )
            encoder = AudioEncoder(handle, audio_format, self.config.get('audio.timeslice_ms', 250))
        except ScribeError as e:
            self.microphone.release(handle)
            self.session = None
            self._surface(e)
            return

        settings = StreamSettings.from_config(self.config, audio_format.encoding)
        settings.sample_rate = handle.sample_rate
        settings.channels = constraints.channels
        url = build_listen_url(self.config.get('transcription.url'), settings)

        self._handle = handle
        self._encoder = encoder
        self._saver = AudioSaver(handle)
        self._client = StreamingTranscriptionClient(
            transport_factory=self.transport_factory,
            url=url,
            api_key=api_key,
            on_event=self._on_transcription_event,
            on_status=self._on_connection_status,
            max_reconnect_attempts=self.config.get('transcription.max_reconnect_attempts', 5),
            keepalive_interval=self.config.get('transcription.keepalive_interval_seconds', 8.0),
            flush_timeout=self.config.get('transcription.flush_timeout_seconds', 5.0),
            sleep=self.sleep,
        )

        self._set_state(ControllerState.RECORDING)
        logger.info(f"🎙️ Recording session {self.session.id} for patient {patient_id}")
        self._client.start()

    def _start_audio(self) -> None:
        """Start capture once the first connection is up."""
        self._saver.start()
        chunks = self._encoder.start()
        self._forward_task = asyncio.ensure_future(self._forward_chunks(self._client, chunks))

    async def _forward_chunks(self, client: StreamingTranscriptionClient, chunks) -> None:
        async for chunk in chunks:
            await client.send_audio(chunk.data)

    # Client callbacks

    def _on_transcription_event(self, event: TranscriptionEvent) -> None:
        self.aggregator.on_event(event)
        self._publish_transcript()

    def _on_connection_status(self, status: ConnectionStatus) -> None:
        self.connection_status = status
        pub.sendMessage(self.topic("connection"), status=status)

        if self._state is not ControllerState.RECORDING or self._client is None or self._finishing:
            return
        if status.state is ConnectionState.CONNECTED and self._forward_task is None and self._encoder:
            self._start_audio()
        elif status.state is ConnectionState.DISCONNECTED:
            # Closed cleanly by the backend; audio is still captured for saving.
            self._surface(ScribeError(ErrorKind.STREAM_ENDED, status.detail))
        elif status.state is ConnectionState.FAILED:
            self._abort_task = asyncio.ensure_future(
                self._abort(status.error or ErrorKind.CONNECTION_LOST, status.detail))

    # recording -> processing -> idle

    async def _release(self, persist: bool) -> None:
        """Run the teardown on a task that reset() can cancel and wait for."""
        self._finishing = True
        task = asyncio.ensure_future(self._teardown(persist))
        self._teardown_task = task
        task.add_done_callback(self._on_teardown_done)
        await asyncio.wait({task})
        if not task.cancelled():
            task.result()

    def _on_teardown_done(self, task: asyncio.Task) -> None:
        if self._teardown_task is task:
            self._teardown_task = None
            self._finishing = False

    async def _stop(self) -> None:
        session = self.session
        await self._release(persist=True)
        if session is None or self.session is not session:
            # A reset ran while the teardown was in progress.
            return

        session.end_time = datetime.now()
        session.transcript = self.aggregator.transcript
        text = self.aggregator.final_text.strip()

        if len(text) < self.min_transcript_chars:
            logger.info(f"Transcript too short for a note ({len(text)} < {self.min_transcript_chars} chars)")
            session.status = SessionStatus.COMPLETED
            self._set_state(ControllerState.IDLE)
            return

        session.status = SessionStatus.PROCESSING
        self._set_state(ControllerState.PROCESSING)
        try:
            await self._run_generation(text)
        finally:
            session.status = SessionStatus.COMPLETED
            if self.session is session:
                self._set_state(ControllerState.IDLE)

    async def _abort(self, kind: ErrorKind, detail: Optional[str]) -> None:
        """The stream failed for good: tear down without generating a note."""
        logger.warning(f"Aborting session: {kind.value}")
        session = self.session
        await self._release(persist=True)
        if session is None or self.session is not session:
            return

        session.end_time = datetime.now()
        session.transcript = self.aggregator.transcript
        session.status = SessionStatus.COMPLETED
        self._surface(ScribeError(kind, detail))
        self._set_state(ControllerState.IDLE)

    async def _run_generation(self, text: str) -> Optional[ClinicalNote]:
        self._note_task = asyncio.ensure_future(self._generate(text))
        results = await asyncio.gather(self._note_task, return_exceptions=True)
        self._note_task = None
        result = results[0]
        if isinstance(result, Exception):
            logger.error(f"Note generation crashed: {result!r}")
            self._surface(GenerationError(f"Note generation failed: {result}"))
            return None
        return result if isinstance(result, ClinicalNote) else None

    async def _generate(self, text: str) -> Optional[ClinicalNote]:
        for issue in validate_transcription(text):
            logger.warning(f"Transcript quality: {issue}")

        try:
            note = await self.gateway.generate_note(
                text,
                patient=self.patient,
                visit_type=self.config.get('notes.visit_type'),
            )
        except GenerationError as e:
            self._surface(e)
            return None

        self.note = note
        if self.session is not None:
            self.session.note = note
        self._publish_note()
        return note

    async def _teardown(self, persist: bool) -> None:
        """Release owned resources in order: encoder, client, microphone.

        Everything is detached from the controller before the first await so
        a concurrent reset never releases the same resource twice. Cancelling
        the teardown still releases the microphone and closes the client.
        """
        encoder, self._encoder = self._encoder, None
        forward, self._forward_task = self._forward_task, None
        client, self._client = self._client, None
        handle, self._handle = self._handle, None
        saver, self._saver = self._saver, None

        try:
            if encoder is not None:
                encoder.stop()
            if forward is not None:
                # Ends once the encoder's flushed chunks are sent.
                await asyncio.gather(forward, return_exceptions=True)
            if client is not None:
                await client.stop()
        except asyncio.CancelledError:
            if client is not None:
                await client.close()
            raise
        finally:
            self.microphone.release(handle)
            if saver is not None:
                saver.stop()

        if saver is not None and persist:
            self._persist(saver)

    def _persist(self, saver: AudioSaver) -> None:
        pcm = saver.get_pcm()
        if not pcm or self.store is None or self.session is None:
            return
        try:
            recording = self.store.save_audio(
                self.session.patient_id, pcm, saver.sample_rate, saver.channels)
        except OSError as e:
            logger.error(f"Error saving recording: {e}")
            return
        self.session.recording_id = recording.id
