# services/auth.py
from flask import current_app
from flask_httpauth import HTTPBasicAuth

auth = HTTPBasicAuth()


@auth.verify_password
def verify_password(username, password):
    users = current_app.config['USERS']
    if username in users and users[username] == password:
        return username
