import time

import testtools


TIMEOUT = 5


class TestCase(testtools.TestCase):
    def wait_for(self, predicate, timeout=TIMEOUT):
        deadline = time.time() + timeout
        while not predicate():
            if time.time() > deadline:
                self.fail('Timed out waiting for %s' % predicate)
            time.sleep(.01)

    def assertEventSet(self, event, timeout=TIMEOUT):
        self.assertTrue(event.wait(timeout), 'Timed out waiting for event')
