"""
Models shared by the test suite.
"""

from quarry.orm import Model


class Country(Model):
    __table_name__ = "countries"

    def posts(self):
        return self.has_many_through(Post, User)


class User(Model):
    __table_name__ = "users"
    __casts__ = {
        "is_admin": "bool",
        "settings": "json",
        "born_on": "date",
    }
    __guarded__ = ("is_admin",)

    def posts(self):
        return self.has_many(Post)

    def profile(self):
        return self.has_one(Profile)

    def roles(self):
        return self.belongs_to_many(Role)

    def image(self):
        return self.morph_one(Image, "imageable")

    def country(self):
        return self.belongs_to(Country)


class Profile(Model):
    __table_name__ = "profiles"

    def user(self):
        return self.belongs_to(User)


class Post(Model):
    __table_name__ = "posts"
    __soft_deletes__ = True

    def author(self):
        return self.belongs_to(User, "user_id")

    def comments(self):
        return self.has_many(Comment)

    def images(self):
        return self.morph_many(Image, "imageable")


class Comment(Model):
    __table_name__ = "comments"
    __fillable__ = ("post_id", "body")

    def post(self):
        return self.belongs_to(Post)


class Role(Model):
    __table_name__ = "roles"
    __timestamps__ = False

    def users(self):
        return self.belongs_to_many(User)


class Image(Model):
    __table_name__ = "images"

    def imageable(self):
        return self.morph_to("imageable")


class AuditLog(Model):
    __timestamps__ = False
