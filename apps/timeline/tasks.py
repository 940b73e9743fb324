from feedstore_web.celeryapp import app
from utils import log as logging


@app.task(name="reconcile-timeline")
def ReconcileTimeline(channel):
    """Repair a channel timeline after interrupted or partial writes.

    Channels on a variant without a repair pass are skipped.
    """
    from apps.timeline.models import TimelineNotImplemented, get_timeline

    timeline = get_timeline(channel)
    try:
        return timeline.reconcile()
    except TimelineNotImplemented as e:
        logging.debug(" ---> ~FBTimeline: skipping reconcile for %s: %s" % (channel, e))
        return None
