#!/usr/bin/env python3
"""
Unit tests for the Moodle web service client.
"""

import os
import sys
import json
import unittest
from http.client import BadStatusLine, IncompleteRead
from urllib.parse import parse_qs
from unittest.mock import Mock, patch

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_moodle_sync.models import MoodleUser
from ldap_moodle_sync.moodle_client import MoodleClient, MoodleAPIError, MoodleAuthenticationError


def make_response(payload, status=200, reason='OK'):
    response = Mock()
    response.status = status
    response.reason = reason
    body = payload if isinstance(payload, str) else json.dumps(payload)
    response.read.return_value = body.encode('utf-8')
    return response


class TestMoodleClient(unittest.TestCase):
    """Test cases for MoodleClient."""

    def setUp(self):
        self.config = {
            'base_url': 'https://moodle.example.edu/lms',
            'token': 'abc123token',
            'auth_method': 'ldap',
            'timeout': 15,
            'error_handling': {'max_retries': 2, 'retry_wait_seconds': 0},
        }
        patcher = patch('ldap_moodle_sync.moodle_client.HTTPSConnection')
        self.mock_https = patcher.start()
        self.addCleanup(patcher.stop)
        self.connection = self.mock_https.return_value
        self.client = MoodleClient(self.config)

    def respond(self, *responses):
        self.connection.getresponse.side_effect = list(responses)

    def sent_body(self, call_index=-1):
        args = self.connection.request.call_args_list[call_index].args
        return {key: values[0] for key, values in parse_qs(args[2]).items()}

    def test_initialization(self):
        self.assertEqual(self.client.host, 'moodle.example.edu')
        self.assertEqual(self.client.rest_path, '/lms/webservice/rest/server.php')
        self.assertIsNotNone(self.client.ssl_context)

    def test_call_posts_token_and_function(self):
        self.respond(make_response({'sitename': 'Example LMS'}))

        result = self.client.call('core_webservice_get_site_info')

        self.assertEqual(result, {'sitename': 'Example LMS'})
        method, path = self.connection.request.call_args.args[:2]
        self.assertEqual((method, path), ('POST', '/lms/webservice/rest/server.php'))
        body = self.sent_body()
        self.assertEqual(body['wstoken'], 'abc123token')
        self.assertEqual(body['wsfunction'], 'core_webservice_get_site_info')
        self.assertEqual(body['moodlewsrestformat'], 'json')
        self.mock_https.assert_called_once_with('moodle.example.edu',
                                                context=self.client.ssl_context, timeout=15)

    def test_exception_payload_raises_api_error(self):
        self.respond(make_response({'exception': 'invalid_parameter_exception',
                                    'errorcode': 'invalidparameter',
                                    'message': 'Invalid parameter value detected'}))

        with self.assertRaises(MoodleAPIError) as context:
            self.client.call('core_user_update_users', {})

        self.assertEqual(context.exception.errorcode, 'invalidparameter')
        self.assertIn('Invalid parameter value detected', str(context.exception))

    def test_invalid_token_raises_authentication_error(self):
        self.respond(make_response({'exception': 'moodle_exception', 'errorcode': 'invalidtoken',
                                    'message': 'Invalid token - token not found'}))

        with self.assertRaises(MoodleAuthenticationError):
            self.client.call('core_webservice_get_site_info')

    def test_http_errors(self):
        self.respond(make_response('', status=403, reason='Forbidden'),
                     make_response('', status=500, reason='Internal Server Error'))

        with self.assertRaises(MoodleAuthenticationError):
            self.client.call('core_webservice_get_site_info')
        with self.assertRaises(MoodleAPIError) as context:
            self.client.call('core_webservice_get_site_info')
        self.assertEqual(context.exception.status_code, 500)

    def test_invalid_json(self):
        self.respond(make_response('<html>maintenance</html>'))

        with self.assertRaises(MoodleAPIError):
            self.client.call('core_webservice_get_site_info')

    def test_connection_error_resets_connection(self):
        self.connection.request.side_effect = ConnectionRefusedError("refused")

        with self.assertRaises(MoodleAPIError):
            self.client.call('core_webservice_get_site_info')

        self.connection.close.assert_called_once()
        self.assertIsNone(self.client.connection)

    def test_fetch_users_parses_managed_users(self):
        self.respond(make_response({
            'users': [
                {'id': 2, 'username': 'Alice', 'auth': 'ldap', 'firstname': 'Alice',
                 'suspended': False, 'customfields': [
                     {'type': 'text', 'value': 'Physics', 'name': 'Faculty', 'shortname': 'faculty'}]},
                {'id': 3, 'username': 'bob', 'auth': 'ldap', 'suspended': True},
            ],
            'warnings': []
        }))

        users = self.client.fetch_users()

        self.assertEqual(sorted(users), ['alice', 'bob'])
        self.assertEqual(users['alice'].customfields, {'faculty': 'Physics'})
        self.assertIs(users['bob'].suspended, True)
        body = self.sent_body()
        self.assertEqual(body['wsfunction'], 'core_user_get_users')
        self.assertEqual(body['criteria[0][key]'], 'auth')
        self.assertEqual(body['criteria[0][value]'], 'ldap')

    def test_fetch_users_empty_is_not_failure(self):
        self.respond(make_response({'users': [], 'warnings': []}))
        self.assertEqual(self.client.fetch_users(), {})

    def test_fetch_users_failure_returns_none(self):
        self.respond(make_response({'exception': 'moodle_exception', 'errorcode': 'nopermissions',
                                    'message': 'Sorry, but you do not currently have permissions'}))
        self.assertIsNone(self.client.fetch_users())

    @patch('ldap_moodle_sync.retry.time.sleep')
    def test_fetch_users_retries_transient_errors(self, mock_sleep):
        self.respond(make_response('', status=503, reason='Service Unavailable'),
                     make_response({'users': [{'id': 5, 'username': 'eve', 'auth': 'ldap'}]}))

        users = self.client.fetch_users()

        self.assertEqual(list(users), ['eve'])
        self.assertEqual(self.connection.request.call_count, 2)

    @patch('ldap_moodle_sync.retry.time.sleep')
    def test_fetch_users_gives_up_after_retries(self, mock_sleep):
        self.respond(*[make_response('', status=502, reason='Bad Gateway') for _ in range(3)])

        self.assertIsNone(self.client.fetch_users())
        self.assertEqual(self.connection.request.call_count, 3)

    def test_malformed_response_resets_connection(self):
        self.connection.getresponse.side_effect = [BadStatusLine('garbage'),
                                                   make_response([])]

        with self.assertRaises(MoodleAPIError) as context:
            self.client.call('core_user_get_users')

        self.assertIsInstance(context.exception.__cause__, BadStatusLine)
        self.connection.close.assert_called_once()
        self.assertIsNone(self.client.connection)

        self.client.update_user(MoodleUser(id=4, username='dave', firstname='Dave'))
        self.assertEqual(self.mock_https.call_count, 2)

    @patch('ldap_moodle_sync.retry.time.sleep')
    def test_fetch_users_malformed_responses_return_none(self, mock_sleep):
        self.connection.getresponse.side_effect = [IncompleteRead(b'{"us') for _ in range(3)]

        self.assertIsNone(self.client.fetch_users())
        self.assertEqual(self.connection.request.call_count, 3)

    @patch('ldap_moodle_sync.retry.time.sleep')
    def test_fetch_users_retries_after_bad_status_line(self, mock_sleep):
        self.connection.getresponse.side_effect = [
            BadStatusLine('garbage'),
            make_response({'users': [{'id': 5, 'username': 'eve', 'auth': 'ldap'}]}),
        ]

        self.assertEqual(list(self.client.fetch_users()), ['eve'])

    def test_create_user_assigns_id(self):
        self.respond(make_response([{'id': 17, 'username': 'carol'}]))
        user = MoodleUser(username='carol', auth='ldap', firstname='Carol', suspended=False,
                          customfields={'faculty': 'Law'})

        created = self.client.create_user(user)

        self.assertEqual(created.id, 17)
        body = self.sent_body()
        self.assertEqual(body['wsfunction'], 'core_user_create_users')
        self.assertEqual(body['users[0][username]'], 'carol')
        self.assertEqual(body['users[0][suspended]'], '0')
        self.assertEqual(body['users[0][customfields][0][type]'], 'faculty')
        self.assertEqual(body['users[0][customfields][0][value]'], 'Law')
        self.assertNotIn('users[0][id]', body)

    def test_create_user_rejects_existing_id(self):
        with self.assertRaises(MoodleAPIError):
            self.client.create_user(MoodleUser(id=4, username='dave'))
        self.connection.request.assert_not_called()

    def test_update_user_sends_patch_only(self):
        self.respond(make_response({'warnings': []}))

        self.client.update_user(MoodleUser(id=2, email='alice@example.edu'))

        body = self.sent_body()
        self.assertEqual(body['wsfunction'], 'core_user_update_users')
        self.assertEqual(body['users[0][id]'], '2')
        self.assertEqual(body['users[0][email]'], 'alice@example.edu')
        self.assertEqual(len([key for key in body if key.startswith('users[0]')]), 2)

    def test_update_user_with_null_response(self):
        self.respond(make_response('null'))
        self.client.update_user(MoodleUser(id=2, firstname='Alice'))

    def test_update_user_warnings_raise(self):
        self.respond(make_response({'warnings': [{'item': 'user', 'itemid': 2,
                                                  'warningcode': 'invaliduserid',
                                                  'message': 'Invalid user ID'}]}))

        with self.assertRaises(MoodleAPIError) as context:
            self.client.update_user(MoodleUser(id=2, firstname='Alice'))
        self.assertEqual(context.exception.errorcode, 'invaliduserid')

    def test_update_user_requires_id(self):
        with self.assertRaises(MoodleAPIError):
            self.client.update_user(MoodleUser(username='x'))

    def test_suspend_user_sends_suspended_flag_only(self):
        self.respond(make_response(None))

        self.client.suspend_user(MoodleUser(id=9, username='zoe', firstname='Zoe'), reason='gone')

        body = self.sent_body()
        self.assertEqual(body['users[0][id]'], '9')
        self.assertEqual(body['users[0][suspended]'], '1')
        self.assertNotIn('users[0][firstname]', body)

    def test_plain_http_connection(self):
        with patch('ldap_moodle_sync.moodle_client.HTTPConnection') as mock_http:
            client = MoodleClient(dict(self.config, base_url='http://localhost:8080'))
            mock_http.return_value.getresponse.return_value = make_response({'sitename': 'Dev'})

            self.assertEqual(client.get_site_info(), {'sitename': 'Dev'})
            mock_http.assert_called_once_with('localhost:8080', timeout=15)
            self.assertEqual(client.rest_path, '/webservice/rest/server.php')

    def test_context_manager_closes_connection(self):
        self.respond(make_response({'sitename': 'Example LMS'}))

        with self.client as client:
            client.get_site_info()

        self.connection.close.assert_called_once()


if __name__ == '__main__':
    unittest.main()
