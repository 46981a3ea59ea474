"""Auto mode: record for a fixed duration, then print the transcript and note."""

import asyncio
import logging
import time
from datetime import datetime
from typing import Optional

from .models.events import ControllerState
from .models.session import PatientContext
from .services.session_controller import SessionController
from .storage.recording_store import RecordingStore

logger = logging.getLogger(__name__)


async def run_auto_mode(controller: SessionController,
                        patient_id: str,
                        duration_seconds: int = 10,
                        patient: Optional[PatientContext] = None) -> bool:
    """Run one unattended recording.

    This mode:
    1. Starts recording for the patient
    2. Records for the specified duration, showing progress
    3. Stops, which saves the audio and generates a note if the transcript is long enough
    4. Reports the transcript, the note and any error

    Returns:
        True if the session completed without a surfaced error
    """
    logger.info(f"🤖 Starting auto mode: {duration_seconds}s recording")
    print(f"🎙️  Recording for patient {patient_id} ({duration_seconds}s)")
    print(f"   Started at: {datetime.now().strftime('%H:%M:%S')}")

    await controller.toggle(patient_id, patient)
    if controller.state is not ControllerState.RECORDING:
        print(f"❌ Could not start recording: {controller.error.user_message() if controller.error else 'unknown error'}")
        return False

    start_time = time.time()
    try:
        for elapsed in range(1, duration_seconds + 1):
            await asyncio.sleep(1)
            if controller.state is not ControllerState.RECORDING:
                # The stream failed and the session was aborted.
                break
            remaining = duration_seconds - elapsed
            progress_bar = "█" * elapsed + "░" * remaining
            print(f"   [{progress_bar}] {elapsed:2d}/{duration_seconds}s - "
                  f"{controller.connection_status.describe()}", end="\r")
        print()

        if controller.state is ControllerState.RECORDING:
            print("⏹️  Stopping recording...")
            await controller.toggle(patient_id, patient)
    except asyncio.CancelledError:
        print("\n🛑 Auto mode interrupted")
        await controller.reset()
        raise

    _report_results(controller, time.time() - start_time)
    return controller.error is None


def _report_results(controller: SessionController, total_time: float) -> None:
    print()
    print(f"✅ Recording completed in {total_time:.1f} seconds")
    if controller.session is not None and controller.session.recording_id:
        print(f"   Saved recording: {controller.session.recording_id}")
    print()

    transcript = controller.aggregator.render(include_partial=False)
    if transcript:
        print("📝 Transcript:")
        for line in transcript.splitlines():
            print(f"   {line}")
    else:
        print("⚠️  No speech was transcribed")
        print("   This might be due to:")
        print("   - No speech during recording")
        print("   - Microphone input level too low")
        print("   - Transcription service issues")
    print()

    note = controller.note
    if note is not None:
        print("🩺 SOAP Note:")
        for title, content in (("Subjective", note.subjective), ("Objective", note.objective),
                               ("Assessment", note.assessment), ("Plan", note.plan)):
            print(f"   {title}: {content}")
        for warning in note.warnings:
            print(f"   ⚠️  {warning}")
        print()

    if controller.error is not None:
        print(f"❌ {controller.error.user_message()}")


def print_recordings(store: RecordingStore, patient_id: Optional[str] = None) -> None:
    """List saved recordings, optionally for one patient."""
    recordings = store.list_for_patient(patient_id) if patient_id else store.list_all()
    if not recordings:
        print("No saved recordings")
        return

    print(f"📁 {len(recordings)} saved recording(s) in {store.data_dir}")
    for recording in recordings:
        print(f"   {recording.date.strftime('%Y-%m-%d %H:%M')}  {recording.patient_id:<12} "
              f"{recording.duration_seconds:6.1f}s  {recording.title}  ({recording.id})")
